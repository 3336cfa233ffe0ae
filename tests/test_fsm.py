"""Tests for the queue item lifecycle FSM.

Covers:
  - Legal transitions along the happy path
  - Failure and cancellation from every non-terminal state
  - Illegal jumps and transitions out of terminal states
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from designlib.ingest.fsm import EVENT_FOR_STATUS, create_fsm
from designlib.models import ItemStatus

NON_TERMINAL = ["pending", "provisioning", "provisioned", "uploading"]


# ======================================================================
# Legal transitions
# ======================================================================


class TestFSMTransitions:
    """Happy path plus the failure/cancel edges."""

    def test_full_happy_path(self):
        """pending -> provisioning -> provisioned -> uploading -> success."""
        fsm = create_fsm("pending")
        fsm.start_provisioning()
        fsm.complete_provisioning()
        fsm.start_upload()
        fsm.complete_upload()
        assert fsm.current_state.value == "success"

    @pytest.mark.parametrize("start", NON_TERMINAL)
    def test_fail_from_any_non_terminal(self, start):
        fsm = create_fsm(start)
        fsm.mark_failed()
        assert fsm.current_state.value == "error"

    @pytest.mark.parametrize("start", NON_TERMINAL)
    def test_cancel_from_any_non_terminal(self, start):
        fsm = create_fsm(start)
        fsm.mark_cancelled()
        assert fsm.current_state.value == "cancelled"

    def test_accepts_enum_status(self):
        fsm = create_fsm(ItemStatus.PROVISIONED)
        fsm.start_upload()
        assert fsm.current_state.value == ItemStatus.UPLOADING.value

    def test_every_target_status_has_an_event(self):
        targets = {s for s in ItemStatus if s != ItemStatus.PENDING}
        assert set(EVENT_FOR_STATUS) == targets


# ======================================================================
# Illegal transitions
# ======================================================================


class TestIllegalTransitions:
    def test_pending_to_success(self):
        """Illegal: cannot skip provisioning and transfer."""
        fsm = create_fsm("pending")
        with pytest.raises(TransitionNotAllowed):
            fsm.complete_upload()

    def test_provisioned_to_success(self):
        fsm = create_fsm("provisioned")
        with pytest.raises(TransitionNotAllowed):
            fsm.complete_upload()

    def test_uploading_back_to_provisioned(self):
        fsm = create_fsm("uploading")
        with pytest.raises(TransitionNotAllowed):
            fsm.complete_provisioning()

    @pytest.mark.parametrize("terminal", ["success", "error", "cancelled"])
    @pytest.mark.parametrize(
        "event", ["start_upload", "complete_upload", "mark_failed", "mark_cancelled"]
    )
    def test_terminal_states_are_final(self, terminal, event):
        fsm = create_fsm(terminal)
        with pytest.raises(TransitionNotAllowed):
            getattr(fsm, event)()
        assert fsm.current_state.value == terminal
