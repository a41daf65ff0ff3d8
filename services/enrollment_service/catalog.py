"""
Class Catalog

Creates classes and maintains their enrollment configuration, prerequisites
and restrictions. Configuration is validated before anything is written.
"""

from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from services.enrollment_service.capacity import CapacityManager
from services.enrollment_service.models import ClassModel, PrerequisiteModel, RestrictionModel
from services.enrollment_service.rules import GRADE_POINTS
from services.enrollment_service.schemas import (
    ClassEnrollmentConfig,
    ConfigValidationResult,
    PrerequisiteType,
    RestrictionType,
    validate_enrollment_config,
)
from services.enrollment_service.store import EnrollmentStore
from shared.domain.exceptions import ValidationError
from shared.security.rbac import Principal, RBACService

logger = structlog.get_logger(__name__)

CONFIG_FIELDS = tuple(ClassEnrollmentConfig.model_fields)


def _invalid_config(result: ConfigValidationResult) -> ValidationError:
    return ValidationError(
        "; ".join(issue.message for issue in result.errors) or "Invalid enrollment configuration",
        field=result.errors[0].field if result.errors else None,
        code="invalid_config",
        context={"errors": [issue.model_dump() for issue in result.errors]},
    )


def validate_prerequisite(prerequisite_type: PrerequisiteType, requirement: str) -> None:
    """
    Check a prerequisite's requirement text can be evaluated.

    Raises:
        ValidationError: If the requirement is malformed for its type
    """
    text = requirement.strip()
    if not text:
        raise ValidationError("Requirement cannot be empty", field="requirement", code="invalid_prerequisite")

    if prerequisite_type is PrerequisiteType.GPA:
        try:
            gpa = float(text)
        except ValueError:
            gpa = -1.0
        if not 0.0 <= gpa <= 4.0:
            raise ValidationError(
                "GPA requirement must be between 0.0 and 4.0",
                field="requirement", value=requirement, code="invalid_prerequisite",
            )

    elif prerequisite_type is PrerequisiteType.YEAR:
        if not text.isdigit() or not 1 <= int(text) <= 8:
            raise ValidationError(
                "Year requirement must be between 1 and 8",
                field="requirement", value=requirement, code="invalid_prerequisite",
            )

    elif prerequisite_type is PrerequisiteType.COURSE:
        codes = [code.strip() for code in text.split(",")]
        if any(len(code) < 3 for code in codes):
            raise ValidationError(
                "Course codes must be at least 3 characters",
                field="requirement", value=requirement, code="invalid_prerequisite",
            )

    elif prerequisite_type is PrerequisiteType.GRADE:
        course, sep, grade = text.partition(":")
        if not sep or len(course.strip()) < 3 or grade.strip().upper() not in GRADE_POINTS:
            raise ValidationError(
                "Grade requirement must look like COURSE:GRADE, e.g. CS101:B",
                field="requirement", value=requirement, code="invalid_prerequisite",
            )


class ClassCatalog:
    """Class configuration management. Only staff of the class's institution may write."""

    def __init__(
        self,
        store: EnrollmentStore,
        capacity: CapacityManager,
        rbac: RBACService | None = None,
    ):
        self.store = store
        self.capacity = capacity
        self.rbac = rbac or RBACService()

    async def create_class(
        self,
        principal: Principal,
        institution_id: str,
        name: str,
        config: Mapping[str, Any] | ClassEnrollmentConfig | None = None,
        instructor_id: str | None = None,
        department_id: str | None = None,
    ) -> str:
        """
        Create a class with a validated enrollment configuration.

        Args:
            principal: Acting staff member
            institution_id: Owning institution
            name: Display name
            config: Enrollment configuration (defaults apply to omitted fields)
            instructor_id: Assigned instructor
            department_id: Owning department

        Returns:
            New class id

        Raises:
            ValidationError: If the configuration is invalid
            AuthorizationError: If principal may not manage classes of the institution
        """
        self.rbac.require_reviewer(principal, institution_id, instructor_id, "create class")

        if isinstance(config, ClassEnrollmentConfig):
            validated = config
        else:
            try:
                validated = ClassEnrollmentConfig.model_validate(dict(config or {}))
            except PydanticValidationError as exc:
                raise _invalid_config(ConfigValidationResult.from_pydantic(exc)) from exc

        async with self.store.transaction() as tx:
            cls = ClassModel(
                institution_id=institution_id,
                department_id=department_id,
                instructor_id=instructor_id,
                name=name,
                current_enrollment=0,
                override_seats=0,
                **self._columns(validated),
            )
            tx.add(cls)
            await tx.flush()

            logger.info(
                "Class created",
                class_id=cls.id,
                institution_id=institution_id,
                enrollment_mode=validated.enrollment_mode.value,
                capacity=validated.capacity,
            )
            return cls.id

    async def get_config(self, class_id: str) -> ClassEnrollmentConfig:
        async with self.store.transaction() as tx:
            cls = await tx.get_class(class_id)
            return ClassEnrollmentConfig.model_validate(
                {name: getattr(cls, name) for name in CONFIG_FIELDS}
            )

    async def update_config(
        self, principal: Principal, class_id: str, changes: Mapping[str, Any]
    ) -> ConfigValidationResult:
        """
        Apply a partial configuration change.

        A capacity increase offers the new seats to the waitlist.

        Returns:
            ConfigValidationResult carrying any warnings

        Raises:
            ValidationError: If the resulting configuration is invalid
        """
        unknown = sorted(set(changes) - set(CONFIG_FIELDS))
        if unknown:
            raise ValidationError(
                f"Unknown configuration fields: {', '.join(unknown)}",
                field=unknown[0], code="invalid_config",
            )

        async with self.store.transaction() as tx:
            cls = await tx.lock_class(class_id)
            self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "configure class")

            merged = {name: getattr(cls, name) for name in CONFIG_FIELDS}
            merged.update(changes)
            result = validate_enrollment_config(merged, current_enrollment=cls.current_enrollment)
            if not result.valid:
                raise _invalid_config(result)

            validated = ClassEnrollmentConfig.model_validate(merged)
            columns = self._columns(validated)
            new_capacity = columns.pop("capacity")
            for name, value in columns.items():
                setattr(cls, name, value)
            await tx.flush()

            if new_capacity != cls.capacity:
                await self.capacity.update_capacity(class_id, new_capacity, principal.user_id, uow=tx)

            logger.info(
                "Class configuration updated",
                class_id=class_id,
                fields=sorted(changes),
                warnings=[warning.code for warning in result.warnings],
            )
            return result

    async def add_prerequisite(
        self,
        principal: Principal,
        class_id: str,
        prerequisite_type: PrerequisiteType,
        requirement: str,
        description: str | None = None,
        strict: bool = True,
    ) -> str:
        validate_prerequisite(prerequisite_type, requirement)

        async with self.store.transaction() as tx:
            cls = await tx.lock_class(class_id)
            self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "add prerequisite")

            prerequisite = PrerequisiteModel(
                class_id=class_id,
                type=prerequisite_type.value,
                requirement=requirement.strip(),
                description=description,
                strict=strict,
            )
            tx.add(prerequisite)
            await tx.flush()
            logger.info(
                "Prerequisite added",
                class_id=class_id,
                type=prerequisite_type.value,
                requirement=prerequisite.requirement,
            )
            return prerequisite.id

    async def add_restriction(
        self,
        principal: Principal,
        class_id: str,
        restriction_type: RestrictionType,
        condition: str,
        description: str | None = None,
        overridable: bool = False,
    ) -> str:
        if not condition.strip():
            raise ValidationError("Condition cannot be empty", field="condition", code="invalid_restriction")

        async with self.store.transaction() as tx:
            cls = await tx.lock_class(class_id)
            self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "add restriction")

            restriction = RestrictionModel(
                class_id=class_id,
                type=restriction_type.value,
                condition=condition.strip(),
                description=description,
                overridable=overridable,
            )
            tx.add(restriction)
            await tx.flush()
            logger.info("Restriction added", class_id=class_id, type=restriction_type.value)
            return restriction.id

    @staticmethod
    def _columns(config: ClassEnrollmentConfig) -> dict[str, Any]:
        columns = config.model_dump()
        columns["enrollment_mode"] = config.enrollment_mode.value
        return columns
