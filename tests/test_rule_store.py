"""Tests for Rule Store CRUD and its invariants."""

import pytest

from exceptions import ConflictError
from models import ForwardingProxyConfig, Group, HostEntry, ProxyProtocol
from rule_store import RuleStore


@pytest.fixture
def group(store):
    group = Group(id="g1", name="Staging")
    assert store.add_group(group)
    return group


def _inject_foreign_writes(database, count, writer):
    """Make the next ``count`` saves lose a race against ``writer``."""
    original_save = database.save
    state = {"remaining": count}

    def racing_save(document, expected_revision):
        if state["remaining"] > 0:
            state["remaining"] -= 1
            foreign = database.load()
            writer(foreign)
            original_save(foreign, foreign.revision)
        return original_save(document, expected_revision)

    database.save = racing_save


class TestGroups:

    def test_add_group_activates_by_default(self, store, group):
        assert store.get_active_groups() == ["g1"]
        assert store.get_group("g1").name == "Staging"

    def test_add_group_inactive(self, store):
        assert store.add_group(Group(name="Later"), make_active=False)
        assert store.get_active_groups() == []

    def test_duplicate_name_rejected_and_store_unchanged(self, store, group):
        before = store.snapshot()
        assert store.add_group(Group(name="Staging")) is False
        after = store.snapshot()
        assert [g.id for g in after.groups] == [g.id for g in before.groups]
        assert after.revision == before.revision

    def test_rename_to_existing_name_rejected(self, store, group):
        other = Group(name="Prod")
        store.add_group(other)
        assert store.rename_group(other.id, "Staging") is False
        assert store.get_group(other.id).name == "Prod"

    def test_rename(self, store, group):
        assert store.rename_group("g1", "  Renamed ")
        assert store.get_group("g1").name == "Renamed"

    def test_update_group_rejects_unknown_fields(self, store, group):
        assert store.update_group("g1", {"hosts": []}) is False

    def test_delete_group_prunes_active_set(self, store, group):
        assert store.delete_group("g1")
        assert store.get_groups() == []
        assert store.get_active_groups() == []

    def test_missing_group(self, store):
        assert store.delete_group("nope") is False
        assert store.set_group_active("nope", True) is False

    def test_toggle_round_trip(self, store, group):
        store.add_host("g1", HostEntry(ip="10.0.0.1", domain="a.example.com"))
        before = store.snapshot()
        assert store.set_group_active("g1", False)
        assert store.set_group_active("g1", True)
        after = store.snapshot()
        assert after.active_groups == before.active_groups
        assert [g.to_dict() for g in after.groups] == [g.to_dict() for g in before.groups]

    def test_setting_same_state_does_not_write(self, store, group):
        revision = store.snapshot().revision
        assert store.set_group_active("g1", True)
        assert store.snapshot().revision == revision


class TestHosts:

    def test_add_host_normalizes(self, store, group):
        assert store.add_host("g1", HostEntry(ip="10.0.0.1", domain="WWW.Example.COM"))
        assert store.get_group("g1").hosts[0].domain == "www.example.com"

    def test_duplicate_pair_rejected_case_insensitively(self, store, group):
        assert store.add_host("g1", HostEntry(ip="10.0.0.1", domain="example.com"))
        assert store.add_host("g1", HostEntry(ip="10.0.0.1", domain="EXAMPLE.com")) is False
        assert len(store.get_group("g1").hosts) == 1

    def test_same_domain_different_ip_allowed(self, store, group):
        assert store.add_host("g1", HostEntry(ip="10.0.0.1", domain="example.com"))
        assert store.add_host("g1", HostEntry(ip="10.0.0.2", domain="example.com"))

    def test_invalid_host_rejected(self, store, group):
        assert store.add_host("g1", HostEntry(ip="not-an-ip", domain="example.com")) is False
        assert store.add_host("missing", HostEntry(ip="10.0.0.1", domain="example.com")) is False

    def test_update_host_returns_copy(self, store, group):
        host = HostEntry(ip="10.0.0.1", domain="example.com")
        store.add_host("g1", host)
        updated = store.update_host("g1", host.id, {"ip": "10.0.0.9"})
        assert updated.ip == "10.0.0.9"
        assert updated.id == host.id
        assert store.get_group("g1").hosts[0].ip == "10.0.0.9"

    def test_update_host_into_duplicate_rejected(self, store, group):
        first = HostEntry(ip="10.0.0.1", domain="a.com")
        second = HostEntry(ip="10.0.0.1", domain="b.com")
        store.add_host("g1", first)
        store.add_host("g1", second)
        assert store.update_host("g1", second.id, {"domain": "a.com"}) is None

    def test_toggle_and_delete_host(self, store, group):
        host = HostEntry(ip="10.0.0.1", domain="example.com")
        store.add_host("g1", host)
        assert store.toggle_host("g1", host.id, False)
        assert store.get_group("g1").hosts[0].enabled is False
        assert store.delete_host("g1", host.id)
        assert store.get_group("g1").hosts == []
        assert store.delete_host("g1", host.id) is False


class TestProxyAndFlags:

    def test_set_forwarding_proxy(self, store):
        config = ForwardingProxyConfig(host="proxy.local", port=1080, enabled=True,
                                       protocol=ProxyProtocol.SOCKS5, bypass_list=["*.corp.example"])
        assert store.set_forwarding_proxy(config)
        stored = store.get_forwarding_proxy()
        assert stored.is_configured
        assert stored.bypass_list == ["corp.example"]

    def test_invalid_proxy_rejected(self, store):
        assert store.set_forwarding_proxy(ForwardingProxyConfig(host="proxy.local", port=99999, enabled=True)) is False
        assert not store.get_forwarding_proxy().is_configured

    def test_show_add_group_form(self, store):
        assert store.set_show_add_group_form(True)
        assert store.snapshot().show_add_group_form is True


class TestNotificationsAndRaces:

    def test_mutation_notifies_once_per_revision(self, store, notifier):
        events = []
        notifier.subscribe(events.append)
        store.add_group(Group(name="A"))
        store.add_group(Group(name="B"))
        assert [e.revision for e in events] == [1, 2]
        assert all(e.source == "local" for e in events)

    def test_rejected_mutation_does_not_notify(self, store, notifier):
        events = []
        notifier.subscribe(events.append)
        store.delete_group("missing")
        assert events == []

    def test_mutation_from_ui_listener_refused(self, store, notifier):
        def listener(event):
            store.add_group(Group(name="Nested"))

        notifier.subscribe(listener)
        store.add_group(Group(name="Outer"))
        assert [g.name for g in store.get_groups()] == ["Outer"]

    def test_lost_update_is_retried(self, store, database, group):
        _inject_foreign_writes(
            database, 1,
            lambda doc: doc.find_group("g1").hosts.append(HostEntry(ip="10.0.0.1", domain="foreign.com"))
        )
        assert store.add_host("g1", HostEntry(ip="10.0.0.2", domain="local.com"))
        domains = sorted(h.domain for h in store.get_group("g1").hosts)
        assert domains == ["foreign.com", "local.com"]

    def test_conflict_raised_after_retries(self, database, notifier):
        store = RuleStore(database, notifier, conflict_retries=1)
        counter = {"n": 0}

        def writer(doc):
            counter["n"] += 1
            doc.groups.append(Group(name=f"Foreign {counter['n']}"))

        _inject_foreign_writes(database, 2, writer)
        with pytest.raises(ConflictError):
            store.add_group(Group(name="Mine"))
        assert "Mine" not in [g.name for g in store.get_groups()]


class TestImport:

    def test_import_hosts(self, store, group):
        text = "# header\n10.0.0.1 a.com b.com\nbogus line\n10.0.0.1 a.com\n"
        result = store.import_hosts("g1", text)
        assert result.success
        assert result.imported == 2
        assert len(result.duplicates) == 1
        assert len(result.invalid) == 1
        assert result.invalid[0]["line"] == 3
        assert sorted(h.domain for h in store.get_group("g1").hosts) == ["a.com", "b.com"]

    def test_import_hosts_missing_group(self, store):
        result = store.import_hosts("missing", "10.0.0.1 a.com")
        assert result.success is False

    def test_import_json_merge(self, store, group):
        data = {"hostsGroups": [
            {"name": "Staging", "hosts": [{"ip": "10.0.0.1", "domain": "a.com"}]},
            {"name": "New", "hosts": [{"ip": "10.0.0.2", "domain": "b.com"}, {"ip": "bad", "domain": "c.com"}]},
        ]}
        result = store.import_json(data, mode="merge")
        assert result.success
        assert result.imported == 2
        assert result.skipped == 1
        names = [g.name for g in store.get_groups()]
        assert names == ["Staging", "New"]
        assert len(store.get_active_groups()) == 2

    def test_import_json_replace(self, store, group):
        data = {
            "hostsGroups": [{"name": "Only", "hosts": [{"ip": "10.0.0.1", "domain": "a.com"}]}],
            "socketProxy": {"host": "proxy.local", "port": 8080, "enabled": True, "protocol": "HTTP"},
        }
        result = store.import_json(data, mode="replace")
        assert result.success
        document = store.snapshot()
        assert [g.name for g in document.groups] == ["Only"]
        assert document.active_groups == [document.groups[0].id]
        assert document.proxy.protocol is ProxyProtocol.HTTP

    def test_import_json_new_group(self, store, group):
        data = {"hostsGroups": [
            {"name": "X", "hosts": [{"ip": "10.0.0.1", "domain": "a.com"}]},
            {"name": "Y", "hosts": [{"ip": "10.0.0.1", "domain": "a.com"}]},
        ]}
        result = store.import_json(data, mode="new_group", new_group_name="Imported")
        assert result.success
        assert result.imported == 1
        assert len(result.duplicates) == 1
        assert store.get_groups()[-1].name == "Imported"

    def test_import_json_rejects_bad_document(self, store):
        result = store.import_json({"groups": []})
        assert result.success is False
        assert store.snapshot().revision == 0

    def test_import_json_unknown_mode(self, store):
        assert store.import_json({"hostsGroups": []}, mode="append").success is False
