# app/services/audit_recorder.py
"""
Audit trail for verification runs.

`MongoAuditRecorder` keeps one record per identity plus an append-only event
log. The orchestrator never talks to a recorder directly: it goes through
`AuditTrail`, which logs and absorbs recorder failures so persistence trouble
cannot change the outcome of a run.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from database.mongodb import MongoDB
from models.schemas import AuditEventType, utcnow
from utils.serialization import to_jsonable

logger = logging.getLogger(__name__)

RECORDS_COLLECTION = "verification_records"
EVENTS_COLLECTION = "verification_events"


class RecordStatus:
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"
    FAILED = "FAILED"


class AuditRecorder(Protocol):
    async def initialize_record(self, user_id: str, external_id: Optional[str], identity_id: str) -> None: ...

    async def record_event(self, identity_id: str, event_type: AuditEventType, payload: Dict[str, Any]) -> None: ...

    async def record_step(
        self, identity_id: str, step: str, fields: Dict[str, Any], payload: Optional[Dict[str, Any]] = None
    ) -> None: ...

    async def mark_finished(self, identity_id: str) -> None: ...

    async def record_error(
        self,
        identity_id: str,
        message: str,
        code: Optional[str] = None,
        mark_failed: bool = False,
        context: Any = None,
    ) -> None: ...

    async def record_retry(self, identity_id: str, reason: str, context: Any = None) -> None: ...


class MongoAuditRecorder:
    """MongoDB-backed audit store"""

    def __init__(self, records=None, events=None):
        self.records = records if records is not None else MongoDB.get_collection(RECORDS_COLLECTION)
        self.events = events if events is not None else MongoDB.get_collection(EVENTS_COLLECTION)

    async def _update_record(self, identity_id: str, update: Dict[str, Any]) -> bool:
        update.setdefault("$set", {})["updated_at"] = utcnow()
        result = await self.records.update_one({"identity_id": identity_id}, update)
        if result.matched_count == 0:
            logger.warning(f"Cannot update verification record {identity_id}: not found")
            return False
        return True

    async def initialize_record(self, user_id: str, external_id: Optional[str], identity_id: str) -> None:
        now = utcnow()
        await self.records.update_one(
            {"identity_id": identity_id},
            {
                "$set": {
                    "user_id": user_id,
                    "external_id": external_id,
                    "status": RecordStatus.IN_PROGRESS,
                    "last_error_code": None,
                    "last_error_message": None,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "identity_id": identity_id,
                    "retry_count": 0,
                    "created_at": now,
                },
            },
            upsert=True,
        )
        await self.record_event(
            identity_id,
            AuditEventType.STATUS_CHANGE,
            {"status": RecordStatus.IN_PROGRESS, "at": now},
        )

    async def record_event(self, identity_id: str, event_type: AuditEventType, payload: Dict[str, Any]) -> None:
        await self.events.insert_one({
            "identity_id": identity_id,
            "type": AuditEventType(event_type).value,
            "payload": to_jsonable(payload),
            "created_at": utcnow(),
        })

    async def record_step(
        self, identity_id: str, step: str, fields: Dict[str, Any], payload: Optional[Dict[str, Any]] = None
    ) -> None:
        updated = await self._update_record(identity_id, {"$set": to_jsonable(fields)})
        if updated:
            await self.record_event(
                identity_id,
                AuditEventType.STEP_RESULT,
                {"step": step, **(payload or {})},
            )

    async def mark_finished(self, identity_id: str) -> None:
        updated = await self._update_record(identity_id, {"$set": {
            "status": RecordStatus.FINISHED,
            "last_error_code": None,
            "last_error_message": None,
        }})
        if updated:
            await self.record_event(
                identity_id,
                AuditEventType.STATUS_CHANGE,
                {"status": RecordStatus.FINISHED, "at": utcnow()},
            )

    async def record_error(
        self,
        identity_id: str,
        message: str,
        code: Optional[str] = None,
        mark_failed: bool = False,
        context: Any = None,
    ) -> None:
        status = RecordStatus.FAILED if mark_failed else RecordStatus.IN_PROGRESS
        updated = await self._update_record(identity_id, {"$set": {
            "status": status,
            "last_error_code": code,
            "last_error_message": message,
        }})
        if updated:
            await self.record_event(
                identity_id,
                AuditEventType.ERROR,
                {"code": code, "message": message, "context": context, "at": utcnow()},
            )

    async def record_retry(self, identity_id: str, reason: str, context: Any = None) -> None:
        updated = await self._update_record(identity_id, {"$inc": {"retry_count": 1}})
        if updated:
            await self.record_event(
                identity_id,
                AuditEventType.RETRY,
                {"reason": reason, "context": context, "at": utcnow()},
            )

    # ==================== READ SIDE ====================

    async def get_record(self, identity_id: str) -> Optional[Dict[str, Any]]:
        return await self.records.find_one({"identity_id": identity_id}, {"_id": 0})

    async def list_events(self, identity_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        cursor = self.events.find({"identity_id": identity_id}, {"_id": 0}).sort("created_at", 1)
        return await cursor.to_list(length=limit)


class AuditTrail:
    """
    Best-effort boundary around an AuditRecorder. Every call is awaited,
    failures are logged and never propagate to the caller.
    """

    def __init__(self, recorder: Optional[AuditRecorder]):
        self.recorder = recorder

    async def _guard(self, action: str, identity_id: Optional[str], call: Callable[[], Awaitable[Any]]) -> None:
        try:
            await call()
        except Exception as e:
            logger.error(f"Audit {action} failed for {identity_id}: {str(e)}")

    async def initialize(self, user_id: str, external_id: Optional[str], identity_id: str) -> None:
        if self.recorder is None:
            return
        await self._guard(
            "initialize_record",
            identity_id,
            lambda: self.recorder.initialize_record(user_id, external_id, identity_id),
        )

    async def step(
        self, identity_id: str, step: str, fields: Dict[str, Any], payload: Optional[Dict[str, Any]] = None
    ) -> None:
        if self.recorder is None:
            return
        await self._guard(
            f"record_step[{step}]",
            identity_id,
            lambda: self.recorder.record_step(identity_id, step, fields, payload),
        )

    async def finished(self, identity_id: str) -> None:
        if self.recorder is None:
            return
        await self._guard("mark_finished", identity_id, lambda: self.recorder.mark_finished(identity_id))

    async def error(
        self,
        identity_id: str,
        message: str,
        code: Optional[str] = None,
        mark_failed: bool = False,
        context: Any = None,
    ) -> None:
        if self.recorder is None:
            return
        await self._guard(
            "record_error",
            identity_id,
            lambda: self.recorder.record_error(
                identity_id, message, code=code, mark_failed=mark_failed, context=to_jsonable(context)
            ),
        )

    async def retry(self, identity_id: str, reason: str, context: Any = None) -> None:
        if self.recorder is None:
            return
        await self._guard(
            "record_retry",
            identity_id,
            lambda: self.recorder.record_retry(identity_id, reason, context=to_jsonable(context)),
        )
