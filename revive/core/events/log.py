"""Append-only agent event log.

Events are written by pipeline phases (and external agents through the
API) and read back per project in (created_at, event_id) order.
A ``confidence_delta`` is applied to the owning slice, or to the project
when the event has no slice, in the same transaction as the insert.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import and_, or_

from ..constants import EVENT_PAGE_SIZE, EVENT_TYPES
from ..db import AgentEvent, DatabaseManager, Project, VerticalSlice
from ..utils import as_uuid, clamp_unit

logger = logging.getLogger(__name__)


def parse_cursor(after: Union[str, datetime, None]) -> Optional[datetime]:
    """Accept an ISO timestamp (``Z`` suffix allowed) or a datetime."""
    if after is None or after == "":
        return None
    if isinstance(after, datetime):
        return after.replace(tzinfo=None)
    text = after.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid event cursor: {after!r}")
    # Stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


class EventLog:
    """Project-scoped event store with optional push fan-out."""

    def __init__(self, db_manager: DatabaseManager, broadcaster=None, max_workers: int = 2):
        self._db = db_manager
        self._broadcaster = broadcaster
        self._executor: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers

    @property
    def broadcaster(self):
        return self._broadcaster

    def append(
        self,
        project_id,
        event_type: str,
        content: str = "",
        slice_id=None,
        metadata: Optional[Dict[str, Any]] = None,
        confidence_delta: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Insert one event and return it as a dict.

        Raises:
            ValueError: Unknown event_type.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        pid = as_uuid(project_id)
        sid = as_uuid(slice_id) if slice_id else None

        with self._db.get_session() as session:
            event = AgentEvent(
                project_id=pid,
                slice_id=sid,
                event_type=event_type,
                content=content or "",
                meta=metadata or {},
                confidence_delta=confidence_delta,
            )
            session.add(event)

            if confidence_delta:
                target = None
                if sid is not None:
                    target = session.get(VerticalSlice, sid)
                if target is None:
                    target = session.get(Project, pid)
                if target is not None:
                    target.confidence_score = clamp_unit(
                        (target.confidence_score or 0.0) + confidence_delta
                    )

            session.flush()
            data = event.to_dict()

        logger.debug(f"Event {data['event_id']} ({event_type}) for project {pid}")

        if self._broadcaster is not None:
            try:
                self._broadcaster.publish(data)
            except Exception as e:
                logger.warning(f"Event publish failed for project {pid}: {e}")
        return data

    def append_detached(self, project_id, event_type: str, content: str = "", **kwargs) -> Future:
        """Append on a background thread; failures are logged, not raised."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="event-log"
            )
        future = self._executor.submit(
            self.append, project_id, event_type, content, **kwargs
        )
        future.add_done_callback(self._log_detached_failure)
        return future

    @staticmethod
    def _log_detached_failure(future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Detached event append failed: {error}")

    def list_events(
        self,
        project_id,
        after: Union[str, datetime, None] = None,
        after_id: Optional[int] = None,
        limit: int = EVENT_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        """Events for a project in creation order.

        With only ``after``, events at exactly that timestamp are included
        again so none are skipped; callers dedupe by event_id. With
        ``after_id`` too, the cursor is the exact (created_at, event_id)
        position and nothing is repeated.
        """
        pid = as_uuid(project_id)
        cursor = parse_cursor(after)

        with self._db.get_session() as session:
            query = session.query(AgentEvent).filter(AgentEvent.project_id == pid)
            if cursor is not None and after_id is not None:
                query = query.filter(
                    or_(
                        AgentEvent.created_at > cursor,
                        and_(
                            AgentEvent.created_at == cursor,
                            AgentEvent.event_id > after_id,
                        ),
                    )
                )
            elif cursor is not None:
                query = query.filter(AgentEvent.created_at >= cursor)
            rows = (
                query.order_by(AgentEvent.created_at.asc(), AgentEvent.event_id.asc())
                .limit(limit)
                .all()
            )
            return [row.to_dict() for row in rows]

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
