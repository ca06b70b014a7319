"""
Tests for the payroll document status taxonomy and transition graph.
"""
import pytest

from payroll_hub.services.status_rules import (
    STATUS_TRANSITIONS, DocumentStatus, TransitionTrigger, coerce_status, describe_status,
    get_allowed_transitions, get_final_statuses, get_status_color, get_status_label,
    get_terminal_statuses, get_transition, is_valid_transition,
)


class TestTransitionGraph:
    """Edges of the status graph."""

    def test_happy_path_edges(self):
        path = [
            DocumentStatus.CALCULATION_PENDING,
            DocumentStatus.GENERATING,
            DocumentStatus.GENERATED,
            DocumentStatus.APPROVED,
            DocumentStatus.SENT,
            DocumentStatus.ARCHIVED,
        ]
        for current, target in zip(path, path[1:]):
            assert is_valid_transition(current, target), f"{current} -> {target}"

    def test_no_self_loops(self):
        for status in DocumentStatus:
            assert not is_valid_transition(status, status)

    def test_archived_is_the_only_terminal_status(self):
        assert get_terminal_statuses() == [DocumentStatus.ARCHIVED.value]
        assert get_allowed_transitions(DocumentStatus.ARCHIVED) == []

    def test_failed_documents_can_recover(self):
        allowed = get_allowed_transitions(DocumentStatus.GENERATION_FAILED)
        assert set(allowed) == {
            DocumentStatus.GENERATING, DocumentStatus.PREVIEW_REQUESTED, DocumentStatus.ARCHIVED,
        }

    def test_sent_cannot_go_back(self):
        assert not is_valid_transition(DocumentStatus.SENT, DocumentStatus.APPROVED)
        assert not is_valid_transition(DocumentStatus.SENT, DocumentStatus.GENERATED)

    def test_edges_are_unique(self):
        pairs = [(t.from_status, t.to_status) for t in STATUS_TRANSITIONS]
        assert len(pairs) == len(set(pairs))

    def test_edge_metadata(self):
        approval = get_transition("GENERATED", "APPROVED")
        assert approval.requires_approval is True
        timeout = get_transition("GENERATING", "GENERATION_FAILED")
        assert timeout.trigger == TransitionTrigger.TIMEOUT_EVENT
        assert timeout.timeout_ms == 30000
        scheduled = get_transition("SENT", "ARCHIVED")
        assert scheduled.scheduled_after_days == 30

    def test_unknown_statuses_have_no_edges(self):
        assert get_allowed_transitions("NOT_A_STATUS") == []
        assert not is_valid_transition("NOT_A_STATUS", "GENERATED")
        assert not is_valid_transition("GENERATED", None)


class TestStatusLookups:
    """Parsing and display metadata."""

    def test_coerce_status_is_case_insensitive(self):
        assert coerce_status("generated") == DocumentStatus.GENERATED
        assert coerce_status(" Sent ") == DocumentStatus.SENT
        assert coerce_status(DocumentStatus.APPROVED) == DocumentStatus.APPROVED
        assert coerce_status("bogus") is None
        assert coerce_status(42) is None

    def test_every_status_has_label_and_color(self):
        for status in DocumentStatus:
            assert get_status_label(status) != status.value
            assert get_status_color(status)

    def test_labels_are_french(self):
        assert get_status_label("SENT") == "Envoyé"
        assert get_status_label("GENERATION_FAILED") == "Échec de génération"

    def test_unknown_status_falls_back(self):
        assert get_status_label("WHATEVER") == "WHATEVER"
        assert get_status_color("WHATEVER") == "gray"

    def test_final_statuses(self):
        assert get_final_statuses() == ["GENERATED", "APPROVED", "SENT"]

    @pytest.mark.parametrize("status,terminal", [("ARCHIVED", True), ("SENT", False)])
    def test_describe_status(self, status, terminal):
        info = describe_status(status)
        assert info["status"] == status
        assert info["is_terminal"] is terminal
        assert info["allowed_transitions"] == [s.value for s in get_allowed_transitions(status)]
