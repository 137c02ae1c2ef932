"""
Execution module.

Contains the order ledger, position ledger and change notifications.
The command gateway (execution.command_gateway) is imported directly, it
depends on the reconciliation engine.

ARCHITECTURE:
    CommandGateway (single entry point for all strategy commands)
        │
        ├── OrderLedger (per-order state machine, single source of truth)
        │
        ├── PositionLedger (net position from confirmed fills)
        │
        └── ChangeNotifier (order/position/stream health changes)
"""

from usdm_core.execution.order_ledger import (
    OrderLedger,
    ApplyOutcome,
    ApplyResult,
    OrderAuditEntry,
    check_invariant,
)

from usdm_core.execution.position_ledger import (
    PositionLedger,
    apply_signed_quantity,
)

from usdm_core.execution.notifier import ChangeNotifier

__all__ = [
    # Order ledger
    "OrderLedger",
    "ApplyOutcome",
    "ApplyResult",
    "OrderAuditEntry",
    "check_invariant",
    # Position ledger
    "PositionLedger",
    "apply_signed_quantity",
    # Notifications
    "ChangeNotifier",
]
