"""Tests for the Kopf handlers."""

from unittest.mock import MagicMock, patch

import kopf
import pytest

from kmm_operator import crd, main
from kmm_operator.errors import ReconcileError, StageError
from kmm_operator.reconcile import ReconcileResult

KERNEL_LABEL = crd.DEFAULT_KERNEL_LABEL


@pytest.fixture
def reconciler(monkeypatch):
    reconciler = MagicMock()
    reconciler.reconcile.return_value = ReconcileResult()
    monkeypatch.setattr(main, "_reconciler", reconciler)
    return reconciler


def node_body(labels=None, kernel_version="5.14.0-1"):
    return {
        "metadata": {"name": "worker-0", "labels": dict(labels or {})},
        "status": {"nodeInfo": {"kernelVersion": kernel_version, "osImage": "RHEL 9"}},
    }


class TestModuleHandler:
    """Tests for the Module handlers."""

    def test_reconciles(self, reconciler):
        """Should run one reconcile pass."""
        main.module_handler(name="kmm-ci", namespace="default", body={})

        reconciler.reconcile.assert_called_once_with("kmm-ci", "default")

    def test_failed_stages_become_events(self, reconciler):
        """Should post a warning event for every failed job."""
        reconciler.reconcile.return_value = ReconcileResult(failed_stages=[("5.14.0-1", crd.JOB_TYPE_BUILD)])
        body = {"metadata": {"name": "kmm-ci"}}

        with patch.object(main.kopf, "warn") as warn:
            main.module_handler(name="kmm-ci", namespace="default", body=body)

        warn.assert_called_once()
        assert warn.call_args.kwargs["reason"] == "BuildFailed"
        assert "5.14.0-1" in warn.call_args.kwargs["message"]

    def test_failed_stages_reported_when_other_kernels_error(self, reconciler):
        """Should still post warnings for failed jobs when the pass raises."""
        stage_error = StageError("5.14.0-1", "build", RuntimeError("registry unreachable"))
        reconciler.reconcile.side_effect = ReconcileError(
            [stage_error], failed_stages=[("6.0.0", crd.JOB_TYPE_SIGN)]
        )

        with patch.object(main.kopf, "warn") as warn:
            with pytest.raises(kopf.TemporaryError):
                main.module_handler(name="kmm-ci", namespace="default", body={"metadata": {"name": "kmm-ci"}})

        warn.assert_called_once()
        assert warn.call_args.kwargs["reason"] == "SignFailed"
        assert "6.0.0" in warn.call_args.kwargs["message"]

    def test_delete_forgets_module_lock(self):
        """Should drop the lock of a deleted module."""
        main.module_lock("default", "kmm-ci")

        main.module_delete(name="kmm-ci", namespace="default")

        assert ("default", "kmm-ci") not in main._module_locks

    def test_validation_error_is_permanent(self, reconciler):
        """Should not retry validation errors."""
        reconciler.reconcile.side_effect = ValueError("bad module")

        with pytest.raises(kopf.PermanentError):
            main.module_handler(name="kmm-ci", namespace="default", body={})

    def test_other_errors_are_retried(self, reconciler):
        """Should retry any other error later."""
        reconciler.reconcile.side_effect = RuntimeError("api down")

        with pytest.raises(kopf.TemporaryError):
            main.module_handler(name="kmm-ci", namespace="default", body={})

    def test_timer_logs_errors(self, reconciler):
        """Should keep the timer alive on errors."""
        reconciler.reconcile.side_effect = RuntimeError("api down")

        main.module_timer(name="kmm-ci", namespace="default", body={})


class TestNodeEvent:
    """Tests for the Node event handler."""

    @pytest.fixture
    def clients(self, monkeypatch):
        core_v1 = MagicMock()
        custom_api = MagicMock()
        custom_api.list_cluster_custom_object.return_value = {
            "items": [{"metadata": {"name": "kmm-ci", "namespace": "default"}, "spec": {"selector": {}}}]
        }
        monkeypatch.setattr(main, "get_clients", lambda: (core_v1, MagicMock(), MagicMock(), custom_api))
        monkeypatch.setattr(main, "_node_labeler", None)
        return core_v1, custom_api

    def test_new_node_is_labelled(self, clients, reconciler):
        """Should label a new node with its kernel version."""
        core_v1, _ = clients
        memo = {}

        main.node_event(event={"type": "ADDED"}, body=node_body(), memo=memo)

        core_v1.patch_node.assert_called_once_with(
            name="worker-0",
            body={"metadata": {"labels": {KERNEL_LABEL: "5.14.0-1"}}},
            _content_type="application/merge-patch+json",
        )
        reconciler.reconcile.assert_not_called()
        assert memo["last_node"]["metadata"]["labels"] == {}

    def test_label_change_requeues_modules(self, clients, reconciler):
        """Should reconcile the modules selecting a node whose labels changed."""
        core_v1, _ = clients
        memo = {"last_node": node_body()}

        main.node_event(event={"type": "MODIFIED"}, body=node_body({KERNEL_LABEL: "5.14.0-1"}), memo=memo)

        core_v1.patch_node.assert_not_called()
        reconciler.reconcile.assert_called_once_with("kmm-ci", "default")

    def test_heartbeat_is_ignored(self, clients, reconciler):
        """Should do nothing when neither labels nor kernel changed."""
        core_v1, custom_api = clients
        labelled = node_body({KERNEL_LABEL: "5.14.0-1"})
        memo = {"last_node": labelled}

        main.node_event(event={"type": "MODIFIED"}, body=labelled, memo=memo)

        core_v1.patch_node.assert_not_called()
        custom_api.list_cluster_custom_object.assert_not_called()
        reconciler.reconcile.assert_not_called()
