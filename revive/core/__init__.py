# Subpackages are imported directly (e.g. `from revive.core.db import DatabaseManager`)
# so that importing one layer does not pull in LLM or HTTP clients.
