"""
Eligibility Rules Engine

Implements the Strategy pattern for pluggable eligibility rules. Every
registered rule is evaluated (no short-circuit) so callers see all reasons
at once. Evaluation is pure: facts and the current instant are inputs.
"""

from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from services.enrollment_service.schemas import (
    ClassRules,
    EligibilityReason,
    EligibilityResult,
    PrerequisiteRule,
    PrerequisiteType,
    ReasonSeverity,
    RestrictionRule,
    RestrictionType,
    StudentFacts,
)

logger = structlog.get_logger(__name__)

GRADE_POINTS: dict[str, float] = {
    "A+": 4.3, "A": 4.0, "A-": 3.7,
    "B+": 3.3, "B": 3.0, "B-": 2.7,
    "C+": 2.3, "C": 2.0, "C-": 1.7,
    "D+": 1.3, "D": 1.0, "D-": 0.7,
    "F": 0.0,
}


class UnparsableRequirement(ValueError):
    """Requirement text that cannot be interpreted."""


def _split_values(text: str) -> set[str]:
    return {part.strip().lower() for part in text.split(",") if part.strip()}


def _parse_int(text: str) -> int:
    try:
        return int(text.strip())
    except ValueError as e:
        raise UnparsableRequirement(text) from e


def _parse_float(text: str) -> float:
    try:
        return float(text.strip())
    except ValueError as e:
        raise UnparsableRequirement(text) from e


class EligibilityRule(ABC):
    """
    Abstract base class for eligibility rules (Strategy pattern).

    Each concrete rule inspects one aspect of a (student, class) pair and
    returns zero or more reasons.
    """

    def __init__(self, name: str, priority: int = 0):
        """
        Initialize rule.

        Args:
            name: Rule identifier
            priority: Evaluation order (higher = earlier)
        """
        self.name = name
        self.priority = priority

    @abstractmethod
    def evaluate(
        self, facts: StudentFacts, rules: ClassRules, now: datetime
    ) -> list[EligibilityReason]:
        """
        Evaluate the rule.

        Args:
            facts: Student academic facts
            rules: Class prerequisites, restrictions and window
            now: Evaluation instant

        Returns:
            Reasons found (empty when the rule is satisfied)
        """

    def __lt__(self, other: "EligibilityRule") -> bool:
        """Compare rules by priority for sorting."""
        return self.priority > other.priority


class EnrollmentWindowRule(EligibilityRule):
    """Enrollment must happen inside [enrollment_start, enrollment_end)."""

    def __init__(self, priority: int = 100):
        super().__init__("enrollment_window", priority)

    def evaluate(
        self, facts: StudentFacts, rules: ClassRules, now: datetime
    ) -> list[EligibilityReason]:
        if rules.enrollment_start and now < rules.enrollment_start:
            return [EligibilityReason(
                type="enrollment_not_open",
                message=f"Enrollment opens on {rules.enrollment_start.isoformat()}",
            )]
        if rules.enrollment_end and now >= rules.enrollment_end:
            return [EligibilityReason(
                type="enrollment_closed",
                message=f"Enrollment closed on {rules.enrollment_end.isoformat()}",
            )]
        return []


class InstitutionRule(EligibilityRule):
    """Students enroll only in classes of their own institution."""

    def __init__(self, priority: int = 95):
        super().__init__("institution_match", priority)

    def evaluate(
        self, facts: StudentFacts, rules: ClassRules, now: datetime
    ) -> list[EligibilityReason]:
        if facts.institution_id and rules.institution_id and facts.institution_id != rules.institution_id:
            return [EligibilityReason(
                type="institution_mismatch",
                message="Student belongs to a different institution",
            )]
        return []


class PrerequisiteCheckRule(EligibilityRule):
    """
    Checks every prerequisite of the class.

    Strict prerequisites produce blocking errors; non-strict ones produce
    overridable errors. Custom or unparsable requirements produce warnings.
    """

    def __init__(self, priority: int = 90):
        super().__init__("prerequisite_check", priority)

    def evaluate(
        self, facts: StudentFacts, rules: ClassRules, now: datetime
    ) -> list[EligibilityReason]:
        reasons: list[EligibilityReason] = []
        for prerequisite in rules.prerequisites:
            try:
                failure = self._check(prerequisite, facts)
            except UnparsableRequirement:
                logger.warning(
                    "Unparsable prerequisite",
                    class_id=rules.class_id,
                    type=prerequisite.type.value,
                    requirement=prerequisite.requirement,
                )
                reasons.append(EligibilityReason(
                    type=f"prerequisite_{prerequisite.type.value}",
                    message=f"Prerequisite '{prerequisite.requirement}' could not be evaluated",
                    severity=ReasonSeverity.WARNING,
                ))
                continue

            if failure:
                reasons.append(EligibilityReason(
                    type=f"prerequisite_{prerequisite.type.value}",
                    message=prerequisite.description or failure,
                    severity=ReasonSeverity.ERROR,
                    overridable=not prerequisite.strict,
                ))
        return reasons

    def _check(self, prerequisite: PrerequisiteRule, facts: StudentFacts) -> str | None:
        """Return a failure message, or None when satisfied."""
        requirement = prerequisite.requirement.strip()
        completed = {course.lower() for course in facts.completed_courses}

        if prerequisite.type is PrerequisiteType.COURSE:
            missing = sorted(_split_values(requirement) - completed)
            if missing:
                return f"Missing required course(s): {', '.join(c.upper() for c in missing)}"
            return None

        if prerequisite.type is PrerequisiteType.GRADE:
            course, sep, minimum = requirement.partition(":")
            minimum = minimum.strip().upper()
            if not sep or minimum not in GRADE_POINTS:
                raise UnparsableRequirement(requirement)
            grades = {code.lower(): grade.upper() for code, grade in facts.grades.items()}
            earned = grades.get(course.strip().lower())
            if earned is None or GRADE_POINTS.get(earned, -1.0) < GRADE_POINTS[minimum]:
                return f"Requires grade {minimum} or better in {course.strip().upper()}"
            return None

        if prerequisite.type is PrerequisiteType.YEAR:
            required_year = _parse_int(requirement)
            if facts.year is None or facts.year < required_year:
                return f"Requires year {required_year} or above"
            return None

        if prerequisite.type is PrerequisiteType.MAJOR:
            majors = _split_values(requirement)
            if not majors:
                raise UnparsableRequirement(requirement)
            if facts.major is None or facts.major.lower() not in majors:
                return f"Restricted to majors: {requirement}"
            return None

        if prerequisite.type is PrerequisiteType.GPA:
            required_gpa = _parse_float(requirement)
            if facts.gpa is None or facts.gpa < required_gpa:
                return f"Requires a GPA of at least {required_gpa:.2f}"
            return None

        # Custom prerequisites need a human
        raise UnparsableRequirement(requirement)


class RestrictionCheckRule(EligibilityRule):
    """Checks every restriction of the class."""

    def __init__(self, priority: int = 80):
        super().__init__("restriction_check", priority)

    def evaluate(
        self, facts: StudentFacts, rules: ClassRules, now: datetime
    ) -> list[EligibilityReason]:
        reasons: list[EligibilityReason] = []
        for restriction in rules.restrictions:
            try:
                failure = self._check(restriction, facts)
            except UnparsableRequirement:
                reasons.append(EligibilityReason(
                    type=f"restriction_{restriction.type.value}",
                    message=f"Restriction '{restriction.condition}' requires manual review",
                    severity=ReasonSeverity.WARNING,
                ))
                continue

            if failure:
                reasons.append(EligibilityReason(
                    type=f"restriction_{restriction.type.value}",
                    message=restriction.description or failure,
                    severity=ReasonSeverity.ERROR,
                    overridable=restriction.overridable,
                ))
        return reasons

    def _check(self, restriction: RestrictionRule, facts: StudentFacts) -> str | None:
        condition = restriction.condition.strip()

        if restriction.type is RestrictionType.YEAR_LEVEL:
            minimum = _parse_int(condition)
            if facts.year is None or facts.year < minimum:
                return f"Open to year {minimum} students and above"
            return None

        if restriction.type is RestrictionType.MAJOR:
            allowed = _split_values(condition)
            if facts.major is None or facts.major.lower() not in allowed:
                return f"Open to majors: {condition}"
            return None

        if restriction.type is RestrictionType.DEPARTMENT:
            allowed = _split_values(condition)
            if facts.department is None or facts.department.lower() not in allowed:
                return f"Open to departments: {condition}"
            return None

        if restriction.type is RestrictionType.GPA:
            minimum_gpa = _parse_float(condition)
            if facts.gpa is None or facts.gpa < minimum_gpa:
                return f"Requires a GPA of at least {minimum_gpa:.2f}"
            return None

        if restriction.type is RestrictionType.INSTITUTION:
            allowed = _split_values(condition)
            if facts.institution_id is None or facts.institution_id.lower() not in allowed:
                return "Open to students of specific institutions only"
            return None

        raise UnparsableRequirement(condition)


def recommend_actions(reasons: list[EligibilityReason]) -> list[str]:
    """Turn reasons into next steps a student can act on."""
    actions: list[str] = []
    for reason in reasons:
        if reason.severity is ReasonSeverity.WARNING:
            continue
        if reason.type == "enrollment_not_open":
            actions.append("Wait until the enrollment window opens")
        elif reason.type == "enrollment_closed":
            actions.append("Ask the instructor for a deadline override")
        elif reason.overridable:
            actions.append(f"Request a prerequisite override: {reason.message}")
        elif reason.type.startswith("prerequisite_"):
            actions.append(f"Complete the requirement first: {reason.message}")
        else:
            actions.append(f"Contact your advisor: {reason.message}")
    return list(dict.fromkeys(actions))


class RulesEngine:
    """
    Rules evaluation engine that coordinates multiple eligibility rules.

    Executes rules in priority order and aggregates every reason.
    """

    def __init__(self, rules: list[EligibilityRule] | None = None):
        """Initialize engine with the default rule set unless one is given."""
        self.rules: list[EligibilityRule] = []
        for rule in rules if rules is not None else self.default_rules():
            self.register_rule(rule)

    @staticmethod
    def default_rules() -> list[EligibilityRule]:
        return [
            EnrollmentWindowRule(),
            InstitutionRule(),
            PrerequisiteCheckRule(),
            RestrictionCheckRule(),
        ]

    def register_rule(self, rule: EligibilityRule) -> None:
        """
        Register a rule with the engine.

        Args:
            rule: Rule to register
        """
        self.rules.append(rule)
        self.rules.sort()
        logger.debug("Eligibility rule registered", rule_name=rule.name, priority=rule.priority)

    def evaluate_eligibility(
        self,
        facts: StudentFacts,
        rules: ClassRules,
        now: datetime,
        include_window: bool = True,
    ) -> EligibilityResult:
        """
        Evaluate whether a student may enroll in a class.

        Args:
            facts: Student academic facts
            rules: Class rules
            now: Evaluation instant
            include_window: Set False to ignore the enrollment window

        Returns:
            EligibilityResult: eligible is False iff a blocking reason exists
        """
        reasons: list[EligibilityReason] = []
        for rule in self.rules:
            reasons.extend(rule.evaluate(facts, rules, now))

        if not include_window:
            reasons = [reason for reason in reasons if not reason.is_window]

        eligible = not any(reason.blocking for reason in reasons)

        if not eligible:
            logger.info(
                "Student not eligible",
                student_id=facts.student_id,
                class_id=rules.class_id,
                reasons=[reason.type for reason in reasons if reason.blocking],
            )

        return EligibilityResult(
            eligible=eligible,
            reasons=reasons,
            recommended_actions=recommend_actions(reasons),
        )
