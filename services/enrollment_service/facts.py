"""Student facts providers consumed by the eligibility checks."""

from typing import Protocol

from services.enrollment_service.schemas import StudentFacts


class StudentFactsProvider(Protocol):
    """Source of academic facts (transcript, year, major, GPA)."""

    async def get_facts(self, student_id: str, institution_id: str) -> StudentFacts: ...


class StaticFactsProvider:
    """
    Facts held in memory, keyed by student id.

    Students without an entry get bare facts, so only unconditional
    classes admit them.
    """

    def __init__(self, facts: dict[str, StudentFacts] | None = None):
        self._facts: dict[str, StudentFacts] = dict(facts or {})

    def put(self, facts: StudentFacts) -> None:
        self._facts[facts.student_id] = facts

    async def get_facts(self, student_id: str, institution_id: str) -> StudentFacts:
        return self._facts.get(
            student_id,
            StudentFacts(student_id=student_id, institution_id=institution_id),
        )
