"""Client for the code-analysis ("left brain") service."""

import logging
from typing import Any, Dict, List

from .http import HttpCollaboratorClient

logger = logging.getLogger(__name__)


class CodeAnalysisClient(HttpCollaboratorClient):
    """Statistics, feature map and per-function metadata of a codebase."""

    service_name = "Code analysis service"

    def get_stats_overview(self) -> Dict[str, Any]:
        return self._get("/api/stats/overview")

    def get_graph(self, limit: int = 5000) -> Dict[str, Any]:
        return self._get("/api/graph", {"limit": limit})

    def derive_feature_map(self) -> Dict[str, Any]:
        """Group graph nodes into feature domains by their featureContext.

        A node may belong to several features (comma separated). Features
        are returned largest first.
        """
        graph = self.get_graph()
        nodes = graph.get("nodes") or []
        features: Dict[str, Dict[str, Any]] = {}

        for node in nodes:
            contexts = [c.strip() for c in (node.get("featureContext") or "").split(",") if c.strip()]
            for ctx in contexts:
                feature = features.setdefault(
                    ctx, {"name": ctx, "entityCount": 0, "fileCount": 0, "entities": []}
                )
                feature["entityCount"] += 1
                feature["entities"].append({
                    "id": node.get("id"),
                    "name": node.get("label"),
                    "kind": node.get("kind"),
                    "filePath": node.get("filePath"),
                    "justification": node.get("justification"),
                })

        for feature in features.values():
            feature["fileCount"] = len({e["filePath"] for e in feature["entities"] if e["filePath"]})

        ordered = sorted(features.values(), key=lambda f: f["entityCount"], reverse=True)
        return {
            "features": ordered,
            "totalFeatures": len(ordered),
            "totalEntities": len(nodes),
        }

    def list_functions(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        data = self._get("/api/functions", {"limit": limit, "offset": offset})
        if isinstance(data, dict):
            return data.get("functions") or data.get("items") or []
        return data or []

    def get_slice_dependencies(self, features: List[str]) -> Dict[str, Any]:
        return self._get(
            "/api/migration/slice-dependencies",
            {"features": ",".join(features)} if features else None,
        )
