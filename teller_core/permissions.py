"""
Role & Permission Module

Pure authorization predicates. An employee has exactly one Role, which
carries a fixed baseline of allowed operations, plus a closed set of
Capability flags that extend the baseline for individual operations.
Administrators are allowed everything regardless of stored flags.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from decimal import Decimal

from .errors import PermissionDenied
from .logging_config import get_logger


logger = get_logger("teller_core.permissions")


class Role(Enum):
    """Employee roles"""
    ADMIN = "admin"
    MANAGER = "manager"
    TELLER = "teller"
    CUSTOMER_SERVICE = "customer_service"


class Capability(Enum):
    """Stored permission flags that grant operations beyond the role baseline"""
    CREATE_CUSTOMER = "can_create_customer"
    VIEW_CUSTOMERS = "can_view_customers"
    EDIT_CUSTOMER = "can_edit_customer"
    FREEZE_ACCOUNT = "can_freeze_account"
    CLOSE_ACCOUNT = "can_close_account"
    VIEW_ALL_TRANSACTIONS = "can_view_all_transactions"
    UPDATE_EXCHANGE_RATES = "can_update_exchange_rates"
    EDIT_EXCHANGE_RATES = "can_edit_exchange_rates"
    MANAGE_RATES = "can_manage_rates"


class Operation(Enum):
    """Operations gated by authorize()"""
    VIEW_DASHBOARD = "view_dashboard"
    CREATE_CUSTOMER = "create_customer"
    VIEW_CUSTOMERS = "view_customers"
    EDIT_CUSTOMER = "edit_customer"
    MANAGE_TRANSACTIONS = "manage_transactions"
    MANAGE_ADS = "manage_ads"
    MANAGE_CARDS = "manage_cards"
    MANAGE_EXCHANGE_RATES = "manage_exchange_rates"
    ACCESS_ADMIN = "access_admin"
    FREEZE_ACCOUNT = "freeze_account"
    CLOSE_ACCOUNT = "close_account"


# Operations each role may perform without any flag
ROLE_BASELINE: Dict[Role, FrozenSet[Operation]] = {
    Role.ADMIN: frozenset(Operation),
    Role.MANAGER: frozenset({
        Operation.VIEW_DASHBOARD,
        Operation.CREATE_CUSTOMER,
        Operation.VIEW_CUSTOMERS,
        Operation.MANAGE_TRANSACTIONS,
        Operation.MANAGE_ADS,
        Operation.MANAGE_CARDS,
    }),
    Role.TELLER: frozenset({
        Operation.VIEW_DASHBOARD,
        Operation.MANAGE_TRANSACTIONS,
    }),
    Role.CUSTOMER_SERVICE: frozenset({
        Operation.VIEW_DASHBOARD,
    }),
}

# Flags that grant an operation to roles outside its baseline
OPERATION_GRANTS: Dict[Operation, Tuple[Capability, ...]] = {
    Operation.CREATE_CUSTOMER: (Capability.CREATE_CUSTOMER,),
    Operation.VIEW_CUSTOMERS: (Capability.VIEW_CUSTOMERS,),
    Operation.EDIT_CUSTOMER: (Capability.EDIT_CUSTOMER,),
    Operation.MANAGE_TRANSACTIONS: (Capability.VIEW_ALL_TRANSACTIONS,),
    Operation.MANAGE_EXCHANGE_RATES: (
        Capability.UPDATE_EXCHANGE_RATES,
        Capability.EDIT_EXCHANGE_RATES,
        Capability.MANAGE_RATES,
    ),
    Operation.FREEZE_ACCOUNT: (Capability.FREEZE_ACCOUNT,),
    Operation.CLOSE_ACCOUNT: (Capability.CLOSE_ACCOUNT,),
}


def parse_role(value: Union[Role, str]) -> Role:
    """Parse a stored role value; raises ValueError for unknown roles"""
    if isinstance(value, Role):
        return value
    return Role(str(value).strip().lower())


def parse_capabilities(raw: Any) -> FrozenSet[Capability]:
    """
    Parse stored permission data into a closed capability set.

    Accepts a list of flag names or a ``{flag: bool}`` mapping. Unknown
    flags are dropped.
    """
    if not raw:
        return frozenset()

    if isinstance(raw, dict):
        names: Iterable[Any] = [name for name, enabled in raw.items() if enabled is True]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        names = raw
    else:
        return frozenset()

    known = {c.value: c for c in Capability}
    result = set()
    for name in names:
        if isinstance(name, Capability):
            result.add(name)
        elif name in known:
            result.add(known[name])
        else:
            logger.debug(f"Ignoring unknown permission flag: {name!r}")
    return frozenset(result)


def _parse_operation(value: Union[Operation, str]) -> Optional[Operation]:
    if isinstance(value, Operation):
        return value
    try:
        return Operation(value)
    except ValueError:
        return None


def authorize(role: Union[Role, str], permissions: Iterable[Capability],
              operation: Union[Operation, str], account: Optional[Any] = None) -> bool:
    """
    Decide whether a role/permission set may perform an operation.

    Never raises. For ``close_account``, passing the target account makes a
    non-zero balance deny the operation.

    Args:
        role: Employee role
        permissions: Capability flags held by the employee
        operation: Operation being attempted
        account: Optional target account (anything with a ``balance``)

    Returns:
        True if allowed
    """
    try:
        parsed_role = parse_role(role)
    except ValueError:
        return False

    parsed_operation = _parse_operation(operation)
    if parsed_operation is None:
        return False

    if parsed_operation is Operation.CLOSE_ACCOUNT and account is not None:
        if Decimal(str(getattr(account, 'balance', 0))) != Decimal('0'):
            return False

    # Administrator override
    if parsed_role is Role.ADMIN:
        return True

    if parsed_operation in ROLE_BASELINE[parsed_role]:
        return True

    held = set(permissions or ())
    return any(capability in held for capability in OPERATION_GRANTS.get(parsed_operation, ()))


def allowed_operations(role: Union[Role, str], permissions: Iterable[Capability]) -> List[Operation]:
    """All operations the role/permission set may perform, in declaration order"""
    held = frozenset(permissions or ())
    return [op for op in Operation if authorize(role, held, op)]


def required_capability(operation: Operation) -> str:
    """
    Name what would grant the operation: the first flag that grants it,
    or the roles whose baseline includes it.
    """
    grants = OPERATION_GRANTS.get(operation)
    if grants:
        return grants[0].value
    roles = [role.value for role in Role if operation in ROLE_BASELINE[role]]
    return "role:" + "|".join(roles)


def require(identity: Any, operation: Operation, account: Optional[Any] = None) -> None:
    """
    Raise PermissionDenied unless ``identity`` may perform ``operation``.

    ``identity`` is anything exposing ``role``, ``permissions`` and
    ``employee_id``.
    """
    if authorize(identity.role, identity.permissions, operation, account):
        return
    logger.info(
        f"Permission denied: {identity.employee_id} -> {operation.value}"
    )
    raise PermissionDenied(operation.value, required_capability(operation), identity.employee_id)


def require_any(identity: Any, *operations: Operation) -> None:
    """Raise PermissionDenied naming the last operation unless any of them is allowed"""
    for operation in operations:
        if authorize(identity.role, identity.permissions, operation):
            return
    require(identity, operations[-1])
