"""
Statutory minimum leave entitlements.

Policy writes must not configure max_days below these floors
(Labour Act, 2003 (Act 651) and Public Service conditions).
"""
from typing import Dict, List, Optional
from pydantic import BaseModel

from leaveflow.models.leave_balance import LeaveType, resolve_leave_type

STATUTORY_LEAVE_MINIMUMS: Dict[LeaveType, float] = {
    LeaveType.ANNUAL: 21,
    LeaveType.MATERNITY: 84,  # 12 weeks
    LeaveType.PATERNITY: 5,
    LeaveType.SICK: 12,
    LeaveType.COMPASSIONATE: 3,
}

LEGAL_REFERENCES: Dict[LeaveType, str] = {
    LeaveType.ANNUAL: "Labour Act, 2003 (Act 651), Section 20",
    LeaveType.MATERNITY: "Labour Act, 2003 (Act 651), Section 57",
    LeaveType.PATERNITY: "Public Services Commission Conditions of Service",
    LeaveType.SICK: "Public Services Commission Conditions of Service",
    LeaveType.COMPASSIONATE: "Public Services Commission Conditions of Service",
}


class PolicyValidation(BaseModel):
    valid: bool
    errors: List[str] = []
    warnings: List[str] = []
    statutory_minimum: Optional[float] = None
    legal_reference: Optional[str] = None


def validate_policy_against_statutory_minimums(leave_type, max_days: float) -> PolicyValidation:
    leave_type = resolve_leave_type(leave_type)
    minimum = STATUTORY_LEAVE_MINIMUMS.get(leave_type)
    reference = LEGAL_REFERENCES.get(leave_type)
    errors: List[str] = []
    warnings: List[str] = []

    if minimum is not None and max_days < minimum:
        errors.append(
            f"{leave_type.value} leave cannot be less than {minimum:g} days. "
            f"This violates {reference}. Minimum required: {minimum:g} days."
        )
    if max_days > 365:
        warnings.append(f"{leave_type.value} leave of {max_days:g} days exceeds one calendar year.")

    return PolicyValidation(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        statutory_minimum=minimum,
        legal_reference=reference,
    )
