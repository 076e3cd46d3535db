"""kpiscore RBAC policy definitions and enforcement.

Deny-by-default authorization keyed by route operation_id:
- every /v1 operation must have a rule in POLICY_RULES; unknown operations are denied
- the acting subject's role must be in the rule's allowed roles

This is the coarse gate only. Ownership and department checks (whose score,
which team) live in the services, which know the resources involved.
"""

from __future__ import annotations

from dataclasses import dataclass

from kpiscore.models.subject import SubjectRole

ALL_ROLES: frozenset[str] = frozenset(r.value for r in SubjectRole)
VERIFIER_ROLES: frozenset[str] = frozenset(
    {SubjectRole.DIVISION_HEAD.value, SubjectRole.ADMINISTRATOR.value}
)
ADMIN_ONLY: frozenset[str] = frozenset({SubjectRole.ADMINISTRATOR.value})


@dataclass(frozen=True, slots=True)
class PolicyRule:
    """Policy rule for one API operation.

    Attributes:
        allowed_roles: Set of roles that can invoke this operation.
        is_mutation: True if this operation modifies state.
    """

    allowed_roles: frozenset[str]
    is_mutation: bool = False


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Result of policy_check evaluation.

    Attributes:
        allow: True if request is authorized.
        code: Machine-readable denial code (e.g., "RBAC_DENIED").
        message: Human-readable denial reason.
        details: Optional additional context for the denial.
    """

    allow: bool
    code: str
    message: str
    details: dict[str, str | list[str]] | None = None


POLICY_RULES: dict[str, PolicyRule] = {
    "getMe": PolicyRule(allowed_roles=ALL_ROLES),
    "createIndicator": PolicyRule(allowed_roles=ADMIN_ONLY, is_mutation=True),
    "listIndicators": PolicyRule(allowed_roles=ALL_ROLES),
    "listIndicatorCategories": PolicyRule(allowed_roles=ALL_ROLES),
    "getIndicatorStats": PolicyRule(allowed_roles=ADMIN_ONLY),
    "listIndicatorsByRole": PolicyRule(allowed_roles=ALL_ROLES),
    "getWeightAllocation": PolicyRule(allowed_roles=ADMIN_ONLY),
    "getIndicator": PolicyRule(allowed_roles=ALL_ROLES),
    "updateIndicator": PolicyRule(allowed_roles=ADMIN_ONLY, is_mutation=True),
    "deactivateIndicator": PolicyRule(allowed_roles=ADMIN_ONLY, is_mutation=True),
    "submitScore": PolicyRule(allowed_roles=ALL_ROLES, is_mutation=True),
    "getScore": PolicyRule(allowed_roles=ALL_ROLES),
    "updateScore": PolicyRule(allowed_roles=ALL_ROLES, is_mutation=True),
    "verifyScore": PolicyRule(allowed_roles=VERIFIER_ROLES, is_mutation=True),
    "listSubjectScores": PolicyRule(allowed_roles=ALL_ROLES),
    "getAnalytics": PolicyRule(allowed_roles=ALL_ROLES),
    "getComparisons": PolicyRule(allowed_roles=ADMIN_ONLY),
    "listSubjects": PolicyRule(allowed_roles=VERIFIER_ROLES),
    "upsertSubject": PolicyRule(allowed_roles=ADMIN_ONLY, is_mutation=True),
}


def policy_check(
    *,
    org_id: str,
    subject_id: str,
    role: str,
    operation_id: str | None,
) -> PolicyDecision:
    """Evaluate RBAC policy for a request.

    Args:
        org_id: Organization from the auth context (required).
        subject_id: Acting subject from the auth context (required).
        role: Acting subject's role.
        operation_id: operation_id of the matched route.

    Returns:
        PolicyDecision with allow=True or allow=False with denial reason.
    """
    if not org_id:
        return PolicyDecision(
            allow=False,
            code="RBAC_DENIED",
            message="Missing organization context",
            details={"reason": "org_id is required"},
        )

    if not subject_id:
        return PolicyDecision(
            allow=False,
            code="RBAC_DENIED",
            message="Missing actor identity",
            details={"reason": "subject_id is required"},
        )

    rule = POLICY_RULES.get(operation_id) if operation_id else None
    if rule is None:
        return PolicyDecision(
            allow=False,
            code="RBAC_DENIED",
            message="Operation not permitted",
            details={"operation_id": operation_id or "", "reason": "unknown_operation"},
        )

    if role not in rule.allowed_roles:
        return PolicyDecision(
            allow=False,
            code="RBAC_DENIED",
            message="Insufficient privileges for this operation",
            details={
                "operation_id": operation_id or "",
                "required_roles": sorted(rule.allowed_roles),
                "actor_role": role,
            },
        )

    return PolicyDecision(allow=True, code="ALLOWED", message="Access granted")


def get_all_v1_operation_ids() -> frozenset[str]:
    """Return all operation_ids defined in the policy rules.

    Used by tests to verify that every /v1 route has a rule.
    """
    return frozenset(POLICY_RULES.keys())
