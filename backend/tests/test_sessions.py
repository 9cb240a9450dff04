from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("sqlalchemy")

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError

from coachdesk import action_items as action_items_api
from coachdesk import sessions as sessions_api
from coachdesk.integrations.rooms import VideoRoom
from coachdesk.models import ActionItem, Client, Coach, Session
from coachdesk.schemas import ActionItemUpdate, SessionCreate, SessionEnd, TranscriptEntryIn


COACH = {"uid": "coach-1", "name": "Sam Coach", "email": "sam@example.com"}
SUMMARY_JSON = json.dumps(
    {
        "summary": "Client is ready to apply.",
        "mood_score": 70,
        "energy_score": 65,
        "engagement_score": 80,
    }
)


def build_client(coach_id: str = "coach-1") -> Client:
    return Client(
        id=uuid.uuid4(),
        coach_id=coach_id,
        full_name="Dana Reyes",
        email="dana@example.com",
        coaching_type="career",
        goals=["get promoted"],
        portal_token="portal-token",
    )


def build_session(client: Client, *, status: str = "scheduled", coach_id: str = "coach-1", **fields) -> Session:
    return Session(
        id=uuid.uuid4(),
        coach_id=coach_id,
        client_id=client.id,
        session_number=2,
        status=status,
        breakthrough_flagged=False,
        followup_email_sent=False,
        rollups_applied=False,
        coach_counter_applied=False,
        **fields,
    )


class FakeScalarList:
    def __init__(self, values: list) -> None:
        self._values = values

    def all(self) -> list:
        return self._values


class FakeResult:
    def __init__(self, *, scalar=None, values: list | None = None) -> None:
        self._scalar = scalar
        self._values = values or []

    def scalar_one_or_none(self):
        return self._scalar

    def scalars(self) -> FakeScalarList:
        return FakeScalarList(self._values)


class FakeRouterDB:
    """Serves queued results in order, then the default result."""

    def __init__(self, *, result: FakeResult | None = None, objects: list | None = None) -> None:
        self.result = result or FakeResult()
        self.queued: list[FakeResult] = []
        self.objects = {(type(obj), obj.id): obj for obj in objects or []}
        self.executed = []
        self.added: list = []
        self.commit_calls = 0
        self.rollback_calls = 0
        self.refresh_calls = 0
        self.commit_error: Exception | None = None

    async def execute(self, statement) -> FakeResult:
        self.executed.append(statement)
        if self.queued:
            return self.queued.pop(0)
        return self.result

    async def get(self, model, key):
        return self.objects.get((model, key))

    def add(self, instance) -> None:
        self.added.append(instance)

    def add_all(self, instances) -> None:
        self.added.extend(instances)

    async def flush(self) -> None:
        return None

    async def commit(self) -> None:
        self.commit_calls += 1
        if self.commit_error is not None:
            raise self.commit_error

    async def rollback(self) -> None:
        self.rollback_calls += 1

    async def refresh(self, instance) -> None:
        self.refresh_calls += 1
        if getattr(instance, "id", None) is None:
            instance.id = uuid.uuid4()


class FakeGenerator:
    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeMailer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []

    async def send(self, to, subject, html, *, sender_name=None):
        if self.fail:
            raise RuntimeError("email provider down")
        self.sent.append({"to": to, "subject": subject, "html": html, "sender_name": sender_name})
        return {"id": "email-1"}


class FakeRooms:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail

    async def create(self, room_id: str) -> VideoRoom:
        if self.fail:
            raise RuntimeError("daily down")
        return VideoRoom(name="cd-room", url="https://coachdesk.daily.co/cd-room")


def coach_profile() -> Coach:
    return Coach(id="coach-1", full_name="Sam Coach", email="sam@example.com", session_count_this_month=0)


def session_db(session: Session, client: Client, **kwargs) -> FakeRouterDB:
    return FakeRouterDB(result=FakeResult(scalar=session), objects=[client, coach_profile()], **kwargs)


@pytest.mark.asyncio
async def test_get_owned_session_raises_404_when_missing() -> None:
    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.get_owned_session(FakeRouterDB(), uuid.uuid4(), "coach-1")

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_get_owned_session_raises_403_for_other_coach() -> None:
    client = build_client()
    session = build_session(client, coach_id="coach-2")

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.get_owned_session(session_db(session, client), session.id, "coach-1")

    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_create_session_numbers_sequentially() -> None:
    client = build_client()
    db = FakeRouterDB(result=FakeResult(scalar=4), objects=[client, coach_profile()])

    result = await sessions_api.create_session(
        payload=SessionCreate(client_id=client.id),
        current_coach=COACH,
        db=db,
    )

    assert result.session_number == 5
    assert result.status == "scheduled"
    assert result.coach_id == "coach-1"
    assert db.commit_calls == 1
    assert isinstance(db.added[0], Session)


@pytest.mark.asyncio
async def test_create_session_creates_coach_profile_on_first_use() -> None:
    client = build_client()
    db = FakeRouterDB(result=FakeResult(scalar=None), objects=[client])

    result = await sessions_api.create_session(payload=SessionCreate(client_id=client.id), current_coach=COACH, db=db)

    assert result.session_number == 1
    assert isinstance(db.added[0], Coach)
    assert db.added[0].full_name == "Sam Coach"


@pytest.mark.asyncio
async def test_create_session_rejects_other_coaches_client() -> None:
    client = build_client(coach_id="coach-2")
    db = FakeRouterDB(objects=[client, coach_profile()])

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.create_session(payload=SessionCreate(client_id=client.id), current_coach=COACH, db=db)

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_create_session_number_conflict_is_409() -> None:
    client = build_client()
    db = FakeRouterDB(result=FakeResult(scalar=1), objects=[client, coach_profile()])
    db.commit_error = IntegrityError("insert", {}, Exception("duplicate key"))

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.create_session(payload=SessionCreate(client_id=client.id), current_coach=COACH, db=db)

    assert exc_info.value.status_code == 409
    assert db.rollback_calls == 1


@pytest.mark.asyncio
async def test_list_sessions_returns_coach_sessions() -> None:
    client = build_client()
    sessions = [build_session(client), build_session(client, status="completed")]
    db = FakeRouterDB(result=FakeResult(values=sessions))

    result = await sessions_api.list_sessions(current_coach=COACH, db=db)

    assert [item.status for item in result] == ["scheduled", "completed"]


@pytest.mark.asyncio
async def test_start_with_room_failure_uses_placeholder() -> None:
    client = build_client()
    session = build_session(client)
    mailer = FakeMailer()

    result = await sessions_api.start_session(
        session_id=session.id,
        current_coach=COACH,
        db=session_db(session, client),
        rooms=FakeRooms(fail=True),
        mailer=mailer,
    )

    assert result.status == "in_progress"
    assert result.room_name == f"cd-{str(session.id)[:8]}"
    assert mailer.sent[0]["sender_name"] == "Sam Coach"


@pytest.mark.asyncio
async def test_start_twice_is_409() -> None:
    client = build_client()
    session = build_session(client, status="in_progress")

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.start_session(
            session_id=session.id,
            current_coach=COACH,
            db=session_db(session, client),
            rooms=FakeRooms(),
            mailer=FakeMailer(),
        )

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_cancel_scheduled_session() -> None:
    client = build_client()
    session = build_session(client)

    result = await sessions_api.cancel_session(session_id=session.id, current_coach=COACH, db=session_db(session, client))

    assert result.status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_in_progress_session_is_409() -> None:
    client = build_client()
    session = build_session(client, status="in_progress")

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.cancel_session(session_id=session.id, current_coach=COACH, db=session_db(session, client))

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_end_with_uploaded_transcript() -> None:
    client = build_client()
    session = build_session(client, status="in_progress", started_at=datetime.now(timezone.utc))
    generator = FakeGenerator(SUMMARY_JSON, "[]", "Nice work today.")
    payload = SessionEnd(
        transcript=[
            TranscriptEntryIn(timestamp="0:00", speaker="coach", text="How are you?"),
            TranscriptEntryIn(timestamp="0:10", speaker="client", text="Ready to apply."),
        ]
    )

    result = await sessions_api.end_session(
        session_id=session.id,
        payload=payload,
        current_coach=COACH,
        db=session_db(session, client),
        generator=generator,
        mailer=FakeMailer(),
    )

    assert result.success is True
    assert result.status == "completed"
    assert session.ai_notes["capture_mode"] == "upload"
    assert session.ai_notes["word_count"] == 6
    assert "[0:10] client: Ready to apply." in generator.prompts[0]


@pytest.mark.asyncio
async def test_end_on_completed_session_reruns_pipeline() -> None:
    client = build_client()
    session = build_session(
        client,
        status="completed",
        transcript_text="[0:00] client: I got the promotion.",
        summary="Old summary",
    )
    session.rollups_applied = True
    session.coach_counter_applied = True
    db = session_db(session, client)
    generator = FakeGenerator(SUMMARY_JSON, json.dumps([{"task": "Celebrate", "priority": "low"}]), "Congrats!")

    result = await sessions_api.end_session(
        session_id=session.id,
        payload=None,
        current_coach=COACH,
        db=db,
        generator=generator,
        mailer=FakeMailer(),
    )

    assert result.success is True
    assert result.reprocessed is True
    assert result.action_items_created == 1
    assert sum(isinstance(obj, ActionItem) for obj in db.added) == 1
    assert "I got the promotion." in generator.prompts[0]


@pytest.mark.asyncio
async def test_end_with_failing_email_still_reports_completed() -> None:
    client = build_client()
    session = build_session(client, status="in_progress", started_at=datetime.now(timezone.utc))

    result = await sessions_api.end_session(
        session_id=session.id,
        payload=None,
        current_coach=COACH,
        db=session_db(session, client),
        generator=FakeGenerator(SUMMARY_JSON, "[]", "See you soon."),
        mailer=FakeMailer(fail=True),
    )

    assert result.success is True
    assert result.status == "completed"
    assert result.followup_email_sent is False


@pytest.mark.asyncio
async def test_end_on_scheduled_session_is_409() -> None:
    client = build_client()
    session = build_session(client)

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.end_session(
            session_id=session.id,
            payload=None,
            current_coach=COACH,
            db=session_db(session, client),
            generator=FakeGenerator(),
            mailer=FakeMailer(),
        )

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_send_email_requires_a_body() -> None:
    client = build_client()
    session = build_session(client, status="completed")

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.send_followup_email(
            session_id=session.id, current_coach=COACH, db=session_db(session, client), mailer=FakeMailer()
        )

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_send_email_resends_stored_body() -> None:
    client = build_client()
    session = build_session(client, status="completed", followup_email_body="Great session!")
    db = session_db(session, client)
    mailer = FakeMailer()

    result = await sessions_api.send_followup_email(session_id=session.id, current_coach=COACH, db=db, mailer=mailer)

    assert result.followup_email_sent is True
    assert "Great session!" in mailer.sent[0]["html"]
    assert db.commit_calls == 1


@pytest.mark.asyncio
async def test_send_email_delivery_failure_is_502() -> None:
    client = build_client()
    session = build_session(client, status="completed", followup_email_body="Great session!")

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.send_followup_email(
            session_id=session.id, current_coach=COACH, db=session_db(session, client), mailer=FakeMailer(fail=True)
        )

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_prep_brief_uses_recent_sessions_and_open_items() -> None:
    client = build_client()
    upcoming = build_session(client)
    previous = build_session(
        client,
        status="completed",
        summary="Talked about confidence.",
        ended_at=datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
    )
    open_item = ActionItem(
        id=uuid.uuid4(), session_id=previous.id, client_id=client.id, coach_id="coach-1",
        task="Update resume", priority="high", due_date="Friday", completed=False,
    )
    done_item = ActionItem(
        id=uuid.uuid4(), session_id=previous.id, client_id=client.id, coach_id="coach-1",
        task="Book coffee chat", priority="low", completed=True,
    )
    db = session_db(upcoming, client)
    db.queued = [
        FakeResult(scalar=upcoming),
        FakeResult(values=[previous]),
        FakeResult(values=[open_item, done_item]),
    ]
    generator = FakeGenerator("  Your client is building confidence.  ")

    result = await sessions_api.generate_prep_brief(
        session_id=upcoming.id, current_coach=COACH, db=db, generator=generator
    )

    prompt = generator.prompts[0]
    assert result.prep_brief == "Your client is building confidence."
    assert upcoming.prep_brief == "Your client is building confidence."
    assert "Session 2 (2026-03-01): Talked about confidence." in prompt
    assert "Update resume [OPEN] (due: Friday)" in prompt
    assert "Book coffee chat [" not in prompt.split("OPEN ACTION ITEMS:")[1]
    assert db.commit_calls == 1


@pytest.mark.asyncio
async def test_prep_brief_generation_failure_is_502() -> None:
    client = build_client()
    session = build_session(client)

    with pytest.raises(HTTPException) as exc_info:
        await sessions_api.generate_prep_brief(
            session_id=session.id,
            current_coach=COACH,
            db=session_db(session, client),
            generator=FakeGenerator(RuntimeError("model offline")),
        )

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_prep_brief_accepts_non_text_goals() -> None:
    client = build_client()
    client.goals = ["run a 10k", 2026, None, "  "]
    session = build_session(client)
    db = session_db(session, client)
    db.queued = [FakeResult(scalar=session), FakeResult(values=[]), FakeResult(values=[])]
    generator = FakeGenerator("Focus on the race plan.")

    result = await sessions_api.generate_prep_brief(
        session_id=session.id, current_coach=COACH, db=db, generator=generator
    )

    assert result.prep_brief == "Focus on the race plan."
    assert "GOALS: run a 10k, 2026\n" in generator.prompts[0]


def build_item(client: Client, session: Session, **fields) -> ActionItem:
    values = {
        "id": uuid.uuid4(),
        "session_id": session.id,
        "client_id": client.id,
        "coach_id": "coach-1",
        "task": "Journal daily",
        "priority": "medium",
        "completed": False,
        "nudge_sent": False,
    }
    values.update(fields)
    return ActionItem(**values)


@pytest.mark.asyncio
async def test_toggle_action_item_completion() -> None:
    client = build_client()
    session = build_session(client, status="completed")
    item = build_item(client, session)
    db = FakeRouterDB(objects=[item])

    done = await action_items_api.update_action_item(
        item_id=item.id, payload=ActionItemUpdate(completed=True), current_coach=COACH, db=db
    )
    assert done.completed is True
    assert done.completed_at is not None

    reopened = await action_items_api.update_action_item(
        item_id=item.id, payload=ActionItemUpdate(completed=False), current_coach=COACH, db=db
    )
    assert reopened.completed is False
    assert reopened.completed_at is None


@pytest.mark.asyncio
async def test_action_item_of_other_coach_is_403() -> None:
    client = build_client()
    session = build_session(client)
    item = build_item(client, session, coach_id="coach-2")

    with pytest.raises(HTTPException) as exc_info:
        await action_items_api.update_action_item(
            item_id=item.id, payload=ActionItemUpdate(completed=True), current_coach=COACH, db=FakeRouterDB(objects=[item])
        )

    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_nudge_generates_and_sends_message() -> None:
    client = build_client()
    session = build_session(client, status="completed", ended_at=datetime.now(timezone.utc) - timedelta(days=4))
    item = build_item(client, session, due_date="Sunday")
    db = FakeRouterDB(objects=[item, client, session, coach_profile()])
    generator = FakeGenerator("Hi Dana, how is the journaling going?")
    mailer = FakeMailer()

    result = await action_items_api.nudge_action_item(
        item_id=item.id, current_coach=COACH, db=db, generator=generator, mailer=mailer
    )

    assert result.nudge_sent is True
    assert item.nudge_sent is True
    assert item.nudge_sent_at is not None
    assert "DAYS SINCE SESSION: 4" in generator.prompts[0]
    assert mailer.sent[0]["subject"] == "Quick check-in from Sam Coach"


@pytest.mark.asyncio
async def test_nudge_delivery_failure_is_502() -> None:
    client = build_client()
    session = build_session(client, status="completed")
    item = build_item(client, session)
    db = FakeRouterDB(objects=[item, client, session, coach_profile()])

    with pytest.raises(HTTPException) as exc_info:
        await action_items_api.nudge_action_item(
            item_id=item.id,
            current_coach=COACH,
            db=db,
            generator=FakeGenerator("Checking in!"),
            mailer=FakeMailer(fail=True),
        )

    assert exc_info.value.status_code == 502
    assert item.nudge_sent is False
