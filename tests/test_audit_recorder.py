# tests/test_audit_recorder.py
import asyncio
from types import SimpleNamespace

import pytest

from database.mongodb import AUDIT_INDEXES, MongoDB
from fakes import FailingAuditRecorder, FakeProvider, InMemoryAuditRecorder, fast_policy, http_error, make_input
from models.schemas import AuditEventType, LivenessStatus
from services.audit_recorder import AuditTrail, MongoAuditRecorder, RecordStatus
from services.event_emitter import VerificationEventEmitter
from services.verification_orchestrator import VerificationOrchestrator


class FakeCursor:
    def __init__(self, documents):
        self.documents = documents

    def sort(self, key, direction):
        self.documents = sorted(self.documents, key=lambda doc: doc[key], reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        return self.documents[:length]


class FakeCollection:
    """Just enough of a motor collection for the recorder"""

    def __init__(self):
        self.documents = []

    def _find(self, query):
        return [doc for doc in self.documents if all(doc.get(k) == v for k, v in query.items())]

    async def update_one(self, query, update, upsert=False):
        matches = self._find(query)
        if not matches and upsert:
            document = dict(query)
            document.update(update.get("$setOnInsert", {}))
            self.documents.append(document)
            matches = [document]
        for document in matches[:1]:
            document.update(update.get("$set", {}))
            for key, amount in update.get("$inc", {}).items():
                document[key] = document.get(key, 0) + amount
        return SimpleNamespace(matched_count=len(matches[:1]))

    async def insert_one(self, document):
        self.documents.append(dict(document))

    async def find_one(self, query, projection=None):
        matches = self._find(query)
        return dict(matches[0]) if matches else None

    def find(self, query, projection=None):
        return FakeCursor([dict(doc) for doc in self._find(query)])


def make_recorder():
    return MongoAuditRecorder(records=FakeCollection(), events=FakeCollection())


def test_record_lifecycle():
    recorder = make_recorder()

    async def scenario():
        await recorder.initialize_record("alice", "ext-1", "identity-1")
        await recorder.record_retry("identity-1", "document_upload_page_front", {"attempt": 1})
        await recorder.record_step("identity-1", "liveness", {"liveness_result": {"status": LivenessStatus.LIVE}})
        await recorder.mark_finished("identity-1")
        return await recorder.get_record("identity-1"), await recorder.list_events("identity-1")

    record, events = asyncio.run(scenario())

    assert record["status"] == RecordStatus.FINISHED
    assert record["retry_count"] == 1
    assert record["liveness_result"] == {"status": "live"}
    assert [event["type"] for event in events] == [
        AuditEventType.STATUS_CHANGE.value,
        AuditEventType.RETRY.value,
        AuditEventType.STEP_RESULT.value,
        AuditEventType.STATUS_CHANGE.value,
    ]
    assert events[2]["payload"]["step"] == "liveness"


def test_record_error_marks_failed():
    recorder = make_recorder()

    async def scenario():
        await recorder.initialize_record("alice", "ext-1", "identity-1")
        await recorder.record_error("identity-1", "Selfie too small", code="400", mark_failed=True)
        return await recorder.get_record("identity-1")

    record = asyncio.run(scenario())

    assert record["status"] == RecordStatus.FAILED
    assert record["last_error_code"] == "400"
    assert record["last_error_message"] == "Selfie too small"


def test_updates_for_unknown_record_are_ignored():
    recorder = make_recorder()

    asyncio.run(recorder.mark_finished("missing"))

    assert recorder.events.documents == []


def test_trail_swallows_recorder_failures():
    trail = AuditTrail(FailingAuditRecorder())

    async def scenario():
        await trail.initialize("alice", "ext-1", "identity-1")
        await trail.step("identity-1", "document", {"document_summary": {}})
        await trail.retry("identity-1", "upload_selfie", {"attempt": 1})
        await trail.error("identity-1", "boom", code="500", mark_failed=True)
        await trail.finished("identity-1")

    asyncio.run(scenario())

    assert trail.recorder.attempts == 5


def test_trail_without_recorder_is_a_no_op():
    asyncio.run(AuditTrail(None).error("identity-1", "boom"))


def test_trail_serializes_context():
    recorder = InMemoryAuditRecorder()
    trail = AuditTrail(recorder)

    async def scenario():
        await trail.initialize("alice", "ext-1", "identity-1")
        await trail.retry("identity-1", "upload_selfie", {"status": LivenessStatus.NOT_LIVE, "raw": b"\x00"})

    asyncio.run(scenario())

    assert recorder.events_of(AuditEventType.RETRY)[0]["payload"]["context"] == {"status": "not_live", "raw": "AA=="}


def test_ensure_indexes_tolerates_failures(monkeypatch):
    created = []

    class IndexCollection:
        def __init__(self, name):
            self.name = name

        async def create_index(self, keys, **options):
            if self.name == "verification_events":
                raise RuntimeError("not authorized")
            created.append((self.name, keys, options))

    monkeypatch.setattr(MongoDB, "db", {name: IndexCollection(name) for name in AUDIT_INDEXES})

    asyncio.run(MongoDB.ensure_indexes())

    assert created[0] == ("verification_records", [("identity_id", 1)], {"unique": True})
    assert len(created) == 2


def test_recorder_requires_connection(monkeypatch):
    monkeypatch.setattr(MongoDB, "db", None)

    with pytest.raises(RuntimeError):
        MongoAuditRecorder()


def test_link_failure_reaches_mongo_record():
    recorder = make_recorder()
    provider = FakeProvider(failures={"link_external_id": [http_error(503)] * 3})
    orchestrator = VerificationOrchestrator(
        provider,
        audit_recorder=recorder,
        emitter=VerificationEventEmitter(),
        policy=fast_policy(),
    )

    async def scenario():
        result = await orchestrator.run(make_input())
        return result, await recorder.get_record("identity-1"), await recorder.list_events("identity-1")

    result, record, events = asyncio.run(scenario())

    assert result.success is False
    assert record["status"] == RecordStatus.FAILED
    assert record["retry_count"] == 2
    assert record["last_error_code"] == "503"
    assert [event["type"] for event in events] == [
        AuditEventType.STATUS_CHANGE.value,
        AuditEventType.RETRY.value,
        AuditEventType.RETRY.value,
        AuditEventType.ERROR.value,
    ]
    assert events[1]["payload"]["reason"] == "link_external_id"


def test_in_memory_recorder_drops_writes_without_record():
    recorder = InMemoryAuditRecorder()

    async def scenario():
        await recorder.record_retry("identity-9", "upload_selfie")
        await recorder.record_error("identity-9", "boom", code="500", mark_failed=True)
        await recorder.record_step("identity-9", "document", {"document_summary": {}})
        await recorder.mark_finished("identity-9")

    asyncio.run(scenario())

    assert recorder.records == {}
    assert recorder.events == []
