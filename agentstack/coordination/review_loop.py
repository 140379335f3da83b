"""Iterative coder / adversarial-reviewer loop."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from ..agents.semaphore import Semaphore
from ..agents.spawner import Spawner
from ..events import EventEmitter, EventType
from .emitter import Emitter

logger = logging.getLogger(__name__)

_VERDICT_RE = re.compile(r"\*\*VERDICT:\s*(APPROVE|REJECT)\*\*", re.IGNORECASE)
_ISSUE_RE = re.compile(
    r"\*\*\[SEVERITY:\s*(CRITICAL|HIGH|MEDIUM|LOW)\]\*\*\s*[-\u2013\u2014]\s*(.+?)(?=\n\*\*\[SEVERITY:|VERDICT:|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_FIELD_RES = {
    "location": re.compile(r"\*\*Location\*\*:\s*(.+)", re.IGNORECASE),
    "attack_vector": re.compile(r"\*\*Attack Vector\*\*:\s*(.+)", re.IGNORECASE),
    "impact": re.compile(r"\*\*Impact\*\*:\s*(.+)", re.IGNORECASE),
    "required_fix": re.compile(r"\*\*Required Fix\*\*:\s*(.+)", re.IGNORECASE),
}


class ReviewLoopStatus(str, Enum):
    PENDING = "pending"
    CODING = "coding"
    REVIEWING = "reviewing"
    FIXING = "fixing"
    APPROVED = "approved"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class ReviewIssue:
    severity: str
    title: str
    required_fix: str = "Fix the identified issue"
    location: str | None = None
    attack_vector: str | None = None
    impact: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class ReviewResult:
    verdict: str  # APPROVE | REJECT
    issues: list[ReviewIssue]
    summary: str
    review_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ReviewLoopState:
    id: str
    coder_id: str
    adversarial_id: str
    code_input: str
    max_iterations: int
    session_id: str | None = None
    iteration: int = 0
    status: ReviewLoopStatus = ReviewLoopStatus.PENDING
    current_code: str | None = None
    reviews: list[ReviewResult] = field(default_factory=list)
    final_verdict: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "coder_id": self.coder_id,
            "adversarial_id": self.adversarial_id,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "status": self.status.value,
            "final_verdict": self.final_verdict,
            "review_count": len(self.reviews),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def parse_review(response: str) -> ReviewResult:
    match = _VERDICT_RE.search(response)
    verdict = "APPROVE" if match and match.group(1).upper() == "APPROVE" else "REJECT"

    issues: list[ReviewIssue] = []
    for issue_match in _ISSUE_RE.finditer(response):
        content = issue_match.group(2).strip()
        extracted = {}
        for key, pattern in _FIELD_RES.items():
            found = pattern.search(content)
            if found:
                extracted[key] = found.group(1).strip()
        issues.append(
            ReviewIssue(
                severity=issue_match.group(1).upper(),
                title=content.splitlines()[0].strip(),
                **extracted,
            )
        )

    if not issues and verdict == "REJECT":
        issues.append(
            ReviewIssue(
                severity="MEDIUM",
                title="Issues found in code review",
                required_fix="Address issues mentioned in review comments",
            )
        )
    return ReviewResult(verdict=verdict, issues=issues, summary=response)


def _initial_prompt(code_input: str) -> str:
    return (
        f"Generate code for the following requirements:\n\n{code_input}\n\n"
        "Provide clean, well-structured code that addresses all requirements."
    )


def _review_prompt(code: str, code_input: str) -> str:
    return f"""Review the following code critically. Try to break it with edge cases, find security issues, and identify bugs.

## Code to Review
```
{code}
```

## Original Requirements
{code_input}

Provide your analysis in this format:
1. List each issue found with severity (CRITICAL/HIGH/MEDIUM/LOW)
2. For each issue, explain the attack vector and required fix
3. End with either **VERDICT: APPROVE** or **VERDICT: REJECT**"""


def _fix_prompt(code: str, issues: list[ReviewIssue], code_input: str) -> str:
    issues_list = "\n".join(
        f"{i}. [{issue.severity}] {issue.title}\n   Fix: {issue.required_fix}" for i, issue in enumerate(issues, 1)
    )
    return f"""Fix the following issues in the code:

## Current Code
```
{code}
```

## Issues to Fix
{issues_list}

## Original Requirements
{code_input}

Provide the corrected code that addresses all the identified issues."""


class ReviewLoop(Emitter):
    """One coder/adversarial pair iterating until approval or the iteration cap.

    Local events: ``loop:start``, ``loop:iteration``, ``loop:review``,
    ``loop:fix``, ``loop:approved``, ``loop:complete``, ``loop:error``.
    """

    def __init__(
        self,
        spawner: Spawner,
        code_input: str,
        *,
        max_iterations: int = 3,
        session_id: str | None = None,
        provider: str | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        super().__init__()
        self.spawner = spawner
        self.provider = provider
        self.events = events
        coder = spawner.spawn("coder", name=f"review-loop-coder-{uuid4().hex[:8]}", session_id=session_id)
        try:
            adversarial = spawner.spawn(
                "adversarial", name=f"review-loop-adversarial-{uuid4().hex[:8]}", session_id=session_id
            )
        except Exception:
            spawner.stop(coder.id)
            raise
        self.state = ReviewLoopState(
            id=str(uuid4()),
            session_id=session_id,
            coder_id=coder.id,
            adversarial_id=adversarial.id,
            code_input=code_input,
            max_iterations=max_iterations,
        )
        logger.info("Review loop %s created (max_iterations=%d)", self.state.id, max_iterations)

    @property
    def id(self) -> str:
        return self.state.id

    @property
    def aborted(self) -> bool:
        return self.state.status == ReviewLoopStatus.ABORTED

    def _publish(self, event_type: EventType, **extra: Any) -> None:
        if self.events:
            self.events.publish(event_type, {**self.state.to_dict(), **extra})

    async def _execute(self, agent_id: str, task: str) -> str:
        result = await self.spawner.execute_agent(agent_id, task, provider=self.provider)
        return result.response

    async def run(self) -> ReviewLoopState:
        try:
            self.emit("loop:start", self.state)
            self._publish(EventType.REVIEW_LOOP_STARTED)
            await self._generate_initial_code()
            await self._run_iterations()
        except Exception as exc:
            if self.aborted:
                return self.state
            self.state.status = ReviewLoopStatus.FAILED
            self.state.completed_at = datetime.now(UTC)
            self.emit("loop:error", exc, self.state)
            self._publish(EventType.REVIEW_LOOP_FAILED, error=str(exc))
            logger.error("Review loop %s failed: %s", self.state.id, exc)
            raise
        finally:
            self._stop_agents()
        return self.state

    async def _generate_initial_code(self) -> None:
        self.state.status = ReviewLoopStatus.CODING
        self.state.current_code = await self._execute(self.state.coder_id, _initial_prompt(self.state.code_input))

    async def _run_iterations(self) -> None:
        while self.state.iteration < self.state.max_iterations and not self.aborted:
            self.state.iteration += 1
            self.emit("loop:iteration", self.state.iteration, self.state)
            self._publish(EventType.REVIEW_LOOP_ITERATION)
            logger.info(
                "Review loop %s iteration %d/%d", self.state.id, self.state.iteration, self.state.max_iterations
            )

            self.state.status = ReviewLoopStatus.REVIEWING
            response = await self._execute(
                self.state.adversarial_id, _review_prompt(self.state.current_code or "", self.state.code_input)
            )
            review = parse_review(response)
            self.state.reviews.append(review)
            self.emit("loop:review", review, self.state)

            if review.verdict == "APPROVE":
                self.state.status = ReviewLoopStatus.APPROVED
                self.state.final_verdict = "APPROVE"
                self.state.completed_at = datetime.now(UTC)
                self.emit("loop:approved", self.state)
                logger.info("Review loop %s approved at iteration %d", self.state.id, self.state.iteration)
                break

            if self.state.iteration < self.state.max_iterations:
                self.state.status = ReviewLoopStatus.FIXING
                self.state.current_code = await self._execute(
                    self.state.coder_id,
                    _fix_prompt(self.state.current_code or "", review.issues, self.state.code_input),
                )
                self.emit("loop:fix", self.state.iteration, review.issues, self.state)

        if self.aborted:
            return
        if self.state.status != ReviewLoopStatus.APPROVED:
            self.state.status = ReviewLoopStatus.MAX_ITERATIONS_REACHED
            self.state.final_verdict = "REJECT"
            self.state.completed_at = datetime.now(UTC)
            logger.warning("Review loop %s reached max iterations without approval", self.state.id)
        self.emit("loop:complete", self.state)
        self._publish(EventType.REVIEW_LOOP_COMPLETED)

    def abort(self) -> None:
        self.state.status = ReviewLoopStatus.ABORTED
        self.state.completed_at = datetime.now(UTC)
        self._stop_agents()
        self._publish(EventType.REVIEW_LOOP_ABORTED)
        logger.info("Review loop %s aborted", self.state.id)

    def _stop_agents(self) -> None:
        self.spawner.stop(self.state.coder_id)
        self.spawner.stop(self.state.adversarial_id)

    def cleanup(self) -> None:
        self._stop_agents()
        self.remove_all_listeners()


class ReviewLoopManager:
    """Tracks live loops and bounds how many run at once."""

    def __init__(
        self,
        spawner: Spawner,
        *,
        events: EventEmitter | None = None,
        max_concurrent: int = 5,
        default_max_iterations: int = 3,
    ) -> None:
        self.spawner = spawner
        self.events = events
        self.default_max_iterations = default_max_iterations
        self.semaphore = Semaphore("review-loops", max_concurrent)
        self._loops: dict[str, ReviewLoop] = {}

    def create(
        self,
        code_input: str,
        *,
        max_iterations: int | None = None,
        session_id: str | None = None,
        provider: str | None = None,
    ) -> ReviewLoop:
        loop = ReviewLoop(
            self.spawner,
            code_input,
            max_iterations=max_iterations or self.default_max_iterations,
            session_id=session_id,
            provider=provider,
            events=self.events,
        )
        self._loops[loop.id] = loop
        return loop

    async def run(self, code_input: str, **options: Any) -> ReviewLoopState:
        loop = self.create(code_input, **options)
        try:
            async with self.semaphore.hold():
                return await loop.run()
        finally:
            self._loops.pop(loop.id, None)

    def get(self, loop_id: str) -> ReviewLoop | None:
        return self._loops.get(loop_id)

    def list(self) -> list[ReviewLoopState]:
        return [loop.state for loop in self._loops.values()]

    def abort(self, loop_id: str) -> bool:
        loop = self._loops.pop(loop_id, None)
        if loop is None:
            return False
        loop.abort()
        return True

    def clear(self) -> None:
        for loop in self._loops.values():
            loop.cleanup()
        self._loops.clear()
