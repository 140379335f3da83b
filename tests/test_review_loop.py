import pytest

from agentstack.coordination.review_loop import ReviewLoopStatus, parse_review
from agentstack.events import EventRecorder, EventType

REJECTION = """Found problems.

**[SEVERITY: HIGH]** - SQL built with string formatting
**Location**: db.py:12
**Attack Vector**: crafted user name
**Impact**: arbitrary queries
**Required Fix**: use bound parameters

**VERDICT: REJECT**"""


def test_parse_review_extracts_issues() -> None:
    review = parse_review(REJECTION)

    assert review.verdict == "REJECT"
    assert len(review.issues) == 1
    issue = review.issues[0]
    assert issue.severity == "HIGH"
    assert issue.title == "SQL built with string formatting"
    assert issue.location == "db.py:12"
    assert issue.required_fix == "use bound parameters"


def test_parse_review_approve_without_issues() -> None:
    review = parse_review("Looks solid.\n\n**VERDICT: approve**")

    assert review.verdict == "APPROVE"
    assert review.issues == []


def test_parse_review_missing_verdict_rejects_with_generic_issue() -> None:
    review = parse_review("I have concerns about error handling.")

    assert review.verdict == "REJECT"
    assert [i.severity for i in review.issues] == ["MEDIUM"]


@pytest.mark.asyncio
async def test_loop_approves_on_first_review(stack, chat_provider) -> None:
    chat_provider.responses = ["def add(a, b): return a + b", "Fine.\n**VERDICT: APPROVE**"]
    recorder = EventRecorder()
    stack.events.on_event(recorder)

    state = await stack.review_loops.run("an add function", session_id="s1")
    await stack.flush()

    assert state.status == ReviewLoopStatus.APPROVED
    assert state.final_verdict == "APPROVE"
    assert state.iteration == 1
    assert state.current_code == "def add(a, b): return a + b"
    assert len(recorder.of_type(EventType.REVIEW_LOOP_STARTED)) == 1
    assert len(recorder.of_type(EventType.REVIEW_LOOP_COMPLETED)) == 1


@pytest.mark.asyncio
async def test_loop_fixes_until_approved(stack, chat_provider) -> None:
    chat_provider.responses = ["v1", REJECTION, "v2", "**VERDICT: APPROVE**"]

    state = await stack.review_loops.run("a user lookup", max_iterations=3)

    assert state.status == ReviewLoopStatus.APPROVED
    assert state.iteration == 2
    assert state.current_code == "v2"
    fix_prompt = chat_provider.calls[2][0][-1].content
    assert "use bound parameters" in fix_prompt


@pytest.mark.asyncio
async def test_loop_stops_at_max_iterations(stack, chat_provider) -> None:
    chat_provider.responses = ["v1", REJECTION, "v2", REJECTION]

    state = await stack.review_loops.run("a user lookup", max_iterations=2)

    assert state.status == ReviewLoopStatus.MAX_ITERATIONS_REACHED
    assert state.final_verdict == "REJECT"
    assert len(state.reviews) == 2
    # No fix after the final review
    assert len(chat_provider.calls) == 4


@pytest.mark.asyncio
async def test_loop_failure_is_reported(stack, chat_provider) -> None:
    chat_provider.responses = [RuntimeError("provider down")]
    recorder = EventRecorder()
    stack.events.on_event(recorder)
    loop = stack.review_loops.create("anything")

    with pytest.raises(RuntimeError, match="provider down"):
        await loop.run()
    await stack.flush()

    assert loop.state.status == ReviewLoopStatus.FAILED
    assert len(recorder.of_type(EventType.REVIEW_LOOP_FAILED)) == 1


@pytest.mark.asyncio
async def test_manager_abort_stops_agents(stack) -> None:
    loop = stack.review_loops.create("anything")
    agents = {loop.state.coder_id, loop.state.adversarial_id}
    assert {a.id for a in stack.spawner.list()} >= agents

    assert stack.review_loops.abort(loop.id) is True
    assert stack.review_loops.abort(loop.id) is False
    assert loop.aborted
    assert stack.review_loops.get(loop.id) is None
    assert not agents & {a.id for a in stack.spawner.list()}


@pytest.mark.asyncio
async def test_manager_lists_and_clears(stack) -> None:
    first = stack.review_loops.create("one")
    stack.review_loops.create("two", max_iterations=5)

    states = stack.review_loops.list()
    assert [s.max_iterations for s in states] == [stack.settings.review_max_iterations, 5]
    assert stack.review_loops.get(first.id) is first

    stack.review_loops.clear()
    assert stack.review_loops.list() == []
    assert stack.spawner.count() == 0


@pytest.mark.asyncio
async def test_finished_loops_release_their_agents(stack, chat_provider) -> None:
    chat_provider.default = "**VERDICT: APPROVE**"
    runs = stack.settings.max_live_agents // 2 + 1

    for _ in range(runs):
        state = await stack.review_loops.run("an add function")
        assert state.status == ReviewLoopStatus.APPROVED

    assert stack.spawner.count() == 0
    assert stack.review_loops.list() == []


@pytest.mark.asyncio
async def test_failed_loop_releases_its_agents(stack, chat_provider) -> None:
    chat_provider.responses = [RuntimeError("provider down")]

    with pytest.raises(RuntimeError):
        await stack.review_loops.run("anything")

    assert stack.spawner.count() == 0
    assert stack.review_loops.list() == []
