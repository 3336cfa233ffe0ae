"""Queue item lifecycle finite state machine.

Each queued file gets its own FSM instance, created at the item's current
status.  The FSM validates transition legality before
:class:`~designlib.ingest.store.QueueStateStore` records the change; it holds
no callbacks and performs no I/O.
"""

from __future__ import annotations

from statemachine import State, StateMachine

from designlib.models import ItemStatus


class ItemLifecycleSM(StateMachine):
    """Seven-state lifecycle for a file's journey through ingestion.

    States:
        pending      -- Enqueued, no record yet.
        provisioning -- Backend record creation in flight.
        provisioned  -- Record exists, waiting for a transfer slot.
        uploading    -- Transfer in flight; cancel handle registered.
        success      -- Bytes stored (link may still be unresolved).
        error        -- Provisioning or transfer failed.
        cancelled    -- Aborted by the caller.
    """

    pending = State("pending", initial=True, value=ItemStatus.PENDING.value)
    provisioning = State("provisioning", value=ItemStatus.PROVISIONING.value)
    provisioned = State("provisioned", value=ItemStatus.PROVISIONED.value)
    uploading = State("uploading", value=ItemStatus.UPLOADING.value)
    success = State("success", final=True, value=ItemStatus.SUCCESS.value)
    error = State("error", final=True, value=ItemStatus.ERROR.value)
    cancelled = State("cancelled", final=True, value=ItemStatus.CANCELLED.value)

    start_provisioning = pending.to(provisioning)
    complete_provisioning = provisioning.to(provisioned)
    start_upload = provisioned.to(uploading)
    complete_upload = uploading.to(success)
    mark_failed = (
        pending.to(error)
        | provisioning.to(error)
        | provisioned.to(error)
        | uploading.to(error)
    )
    mark_cancelled = (
        pending.to(cancelled)
        | provisioning.to(cancelled)
        | provisioned.to(cancelled)
        | uploading.to(cancelled)
    )


# Event that moves an item into each target status.
EVENT_FOR_STATUS: dict[ItemStatus, str] = {
    ItemStatus.PROVISIONING: "start_provisioning",
    ItemStatus.PROVISIONED: "complete_provisioning",
    ItemStatus.UPLOADING: "start_upload",
    ItemStatus.SUCCESS: "complete_upload",
    ItemStatus.ERROR: "mark_failed",
    ItemStatus.CANCELLED: "mark_cancelled",
}


def create_fsm(current_status: ItemStatus | str) -> ItemLifecycleSM:
    """Create an FSM instance positioned at *current_status*."""
    return ItemLifecycleSM(start_value=ItemStatus(current_status).value)
