"""Shared fixtures for hosts-router tests."""

import pytest

from applier import PolicyApplier
from database import StoreDatabase
from models import ApplyResult
from notifier import ChangeNotifier
from rule_store import RuleStore


class RecordingApplier(PolicyApplier):
    """Applier that records installs and clears instead of touching the host."""

    def __init__(self):
        self.installed = []
        self.clears = 0
        self.fail_with = None

    def _install(self, policy):
        if self.fail_with:
            return ApplyResult(success=False, action="apply", error=self.fail_with)
        self.installed.append(policy)
        return ApplyResult(success=True, action="apply")

    def _uninstall(self):
        if self.fail_with:
            return ApplyResult(success=False, action="clear", error=self.fail_with)
        self.clears += 1
        return ApplyResult(success=True, action="clear")


@pytest.fixture
def store_file(tmp_path):
    return str(tmp_path / "store.json")


@pytest.fixture
def database(store_file):
    return StoreDatabase(store_file)


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def store(database, notifier):
    return RuleStore(database, notifier)


@pytest.fixture
def applier():
    return RecordingApplier()
