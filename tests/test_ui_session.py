"""Tests for the UI session: serialization, optimistic updates and revert."""

import threading

import pytest

from exceptions import ApplyError, CommunicationError
from models import ForwardingProxyConfig, Group, HostEntry
from ui_session import BUSY_MESSAGE, UiSession


class FakeMessenger:

    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self.release = None
        self.entered = threading.Event()

    def update_proxy_settings(self):
        self.calls += 1
        self.entered.set()
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        return {"success": True}


@pytest.fixture
def seeded_store(store):
    store.add_group(Group(id="g1", name="Dev", hosts=[HostEntry(id="h1", ip="10.0.0.1", domain="a.com")]))
    return store


def _session(store, notifier, messenger):
    return UiSession(store, messenger, notifier)


class TestToggles:

    def test_toggle_group_success(self, seeded_store, notifier):
        messenger = FakeMessenger()
        session = _session(seeded_store, notifier, messenger)

        result = session.toggle_group("g1", False)
        assert result.success
        assert messenger.calls == 1
        assert seeded_store.get_active_groups() == []
        assert session.view.active_groups == []

    def test_toggle_group_reverted_on_communication_failure(self, seeded_store, notifier):
        messenger = FakeMessenger(error=CommunicationError("unreachable", attempts=5, last_error="refused"))
        session = _session(seeded_store, notifier, messenger)

        result = session.toggle_group("g1", False)
        assert result.success is False
        assert "unreachable" in result.message
        assert seeded_store.get_active_groups() == ["g1"]
        assert session.view.active_groups == ["g1"]

    def test_toggle_host_reverted_on_apply_failure(self, seeded_store, notifier):
        session = _session(seeded_store, notifier, FakeMessenger(error=ApplyError("rejected")))

        result = session.toggle_host("g1", "h1", False)
        assert result.success is False
        assert seeded_store.get_group("g1").hosts[0].enabled is True
        assert session.view.find_group("g1").hosts[0].enabled is True

    def test_toggle_missing_host(self, seeded_store, notifier):
        messenger = FakeMessenger()
        session = _session(seeded_store, notifier, messenger)
        assert session.toggle_host("g1", "nope", False).success is False
        assert messenger.calls == 0

    def test_store_rejection_restores_view(self, seeded_store, notifier):
        messenger = FakeMessenger()
        session = _session(seeded_store, notifier, messenger)
        result = session.toggle_group("missing", True)
        assert result.success is False
        assert "missing" not in session.view.active_groups
        assert messenger.calls == 0

    def test_save_proxy_reverted(self, seeded_store, notifier):
        session = _session(seeded_store, notifier, FakeMessenger(error=ApplyError("rejected")))
        config = ForwardingProxyConfig(host="proxy.local", port=1080, enabled=True)

        assert session.save_proxy(config).success is False
        assert not seeded_store.get_forwarding_proxy().is_configured
        assert not session.view.proxy.is_configured


class TestSerialization:

    def test_second_operation_rejected_while_busy(self, seeded_store, notifier):
        messenger = FakeMessenger()
        messenger.release = threading.Event()
        session = _session(seeded_store, notifier, messenger)

        results = []
        worker = threading.Thread(target=lambda: results.append(session.toggle_group("g1", False)))
        worker.start()
        assert messenger.entered.wait(5)

        assert session.busy
        rejected = session.toggle_host("g1", "h1", False)
        assert rejected.success is False
        assert rejected.message == BUSY_MESSAGE

        messenger.release.set()
        worker.join(5)
        assert results[0].success
        assert not session.busy
        assert seeded_store.get_group("g1").hosts[0].enabled is True


class TestRun:

    def test_run_reports_apply_failure_without_revert(self, seeded_store, notifier):
        session = _session(seeded_store, notifier, FakeMessenger(error=CommunicationError("down")))
        result = session.run("add host", lambda: seeded_store.add_host("g1", HostEntry(ip="10.0.0.2", domain="b.com")))
        assert result.success is False
        assert "Saved" in result.message
        assert len(seeded_store.get_group("g1").hosts) == 2

    def test_view_follows_store_changes(self, seeded_store, notifier):
        session = _session(seeded_store, notifier, FakeMessenger())
        seeded_store.add_group(Group(id="g2", name="Prod"))
        assert [g.id for g in session.view.groups] == ["g1", "g2"]
        session.close()
        seeded_store.delete_group("g2")
        assert [g.id for g in session.view.groups] == ["g1", "g2"]
