"""Client for the behavioral-analysis ("right brain") knowledge service.

Base path: /api/knowledge
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import CollaboratorUnavailableError
from .http import HttpCollaboratorClient

logger = logging.getLogger(__name__)

WORKFLOW_DONE = ("complete", "failed")


class BehavioralAnalysisClient(HttpCollaboratorClient):
    """Ingestion workflows and behavioral contracts."""

    service_name = "Behavioral analysis service"

    def start_ingestion(
        self,
        knowledge_id: str,
        website_url: Optional[str] = None,
        documentation_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"knowledge_id": knowledge_id}
        if website_url:
            body["website_url"] = website_url
        if documentation_urls:
            body["documentation_urls"] = documentation_urls
        return self._post("/api/knowledge/ingest/start", body)

    def get_workflow_status(self, job_id: str) -> Dict[str, Any]:
        return self._get(f"/api/knowledge/workflows/status/{job_id}")

    def wait_for_workflow(
        self,
        job_id: str,
        max_attempts: int = 60,
        interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Dict[str, Any]:
        """Poll until the workflow completes or fails.

        Raises:
            CollaboratorUnavailableError: Still running after max_attempts.
        """
        for attempt in range(max_attempts):
            status = self.get_workflow_status(job_id)
            if status.get("status") in WORKFLOW_DONE:
                return status
            logger.debug(f"Workflow {job_id} is {status.get('status')} ({attempt + 1}/{max_attempts})")
            sleep(interval)
        raise CollaboratorUnavailableError(
            f"Workflow {job_id} did not complete within {max_attempts} attempts"
        )

    def query_knowledge(self, knowledge_id: str) -> Dict[str, Any]:
        return self._get(f"/api/knowledge/query/{knowledge_id}")

    def generate_contract(
        self,
        knowledge_id: str,
        slice_name: str,
        slice_description: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._post(
            "/api/knowledge/contracts/generate",
            {
                "knowledge_id": knowledge_id,
                "slice_name": slice_name,
                "slice_description": slice_description,
            },
        )

    def get_contract_left_brain(self, contract_id: str) -> Dict[str, Any]:
        return self._get(f"/api/knowledge/contracts/{contract_id}/left-brain")
