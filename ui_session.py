"""
UI-context operation serializer
"""

import copy
import threading
from typing import Callable, Optional

from exceptions import ApplyError, CommunicationError, ConflictError
from messenger import Messenger
from models import ActionResult, ForwardingProxyConfig, StoreDocument
from notifier import ChangeNotifier
from rule_store import RuleStore
from logger import logger


BUSY_MESSAGE = "Another operation is in progress"


class UiSession:
    """
    Runs user-triggered operations one at a time.

    Toggles are optimistic: the session view changes first, then the store,
    then the supervisor is asked to apply. If any step fails the store and
    the view go back to what they were and the failure message is returned.
    """

    def __init__(self, store: RuleStore, messenger: Messenger, notifier: Optional[ChangeNotifier] = None):
        self.store = store
        self.messenger = messenger
        self.notifier = notifier
        self.view: StoreDocument = store.snapshot()
        self._busy = threading.Lock()
        self._unsubscribe = notifier.subscribe(self._on_change) if notifier is not None else None

    def _on_change(self, event):
        self.view = self.store.snapshot()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def close(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def refresh(self) -> StoreDocument:
        self.view = self.store.snapshot()
        return self.view

    def _serialized(self, operation: Callable[[], ActionResult]) -> ActionResult:
        if not self._busy.acquire(blocking=False):
            return ActionResult(success=False, message=BUSY_MESSAGE)
        try:
            return operation()
        finally:
            self._busy.release()

    def _commit(self, description: str, prior_view: StoreDocument,
                write: Callable[[], bool], undo: Callable[[], bool]) -> ActionResult:
        try:
            if not write():
                self.view = prior_view
                return ActionResult(success=False, message=f"Could not {description}")
        except ConflictError as e:
            self.view = prior_view
            return ActionResult(success=False, message=str(e))

        try:
            self.messenger.update_proxy_settings()
        except (CommunicationError, ApplyError) as e:
            logger.error(f"Failed to {description}, reverting: {e}")
            try:
                if not undo():
                    logger.error(f"Revert after failed {description} was rejected by the store")
            except ConflictError as revert_error:
                logger.error(f"Revert after failed {description} lost a write race: {revert_error}")
            self.view = prior_view
            return ActionResult(success=False, message=str(e))

        self.view = self.store.snapshot()
        return ActionResult(success=True, message=description.capitalize())

    def toggle_group(self, group_id: str, active: bool) -> ActionResult:
        def operation():
            prior_view = copy.deepcopy(self.view)
            was_active = group_id in self.view.active_groups
            if active and not was_active:
                self.view.active_groups.append(group_id)
            elif not active and was_active:
                self.view.active_groups.remove(group_id)

            return self._commit(
                f"{'enable' if active else 'disable'} group {group_id}",
                prior_view,
                lambda: self.store.set_group_active(group_id, active),
                lambda: self.store.set_group_active(group_id, was_active)
            )

        return self._serialized(operation)

    def toggle_host(self, group_id: str, host_id: str, enabled: bool) -> ActionResult:
        def operation():
            prior_view = copy.deepcopy(self.view)
            group = self.view.find_group(group_id)
            host = group.find_host(host_id) if group is not None else None
            if host is None:
                return ActionResult(success=False, message=f"Host {host_id} not found in group {group_id}")
            was_enabled = host.enabled
            host.enabled = enabled

            return self._commit(
                f"{'enable' if enabled else 'disable'} host {host.domain}",
                prior_view,
                lambda: self.store.toggle_host(group_id, host_id, enabled),
                lambda: self.store.toggle_host(group_id, host_id, was_enabled)
            )

        return self._serialized(operation)

    def save_proxy(self, config: ForwardingProxyConfig) -> ActionResult:
        def operation():
            prior_view = copy.deepcopy(self.view)
            previous = copy.deepcopy(self.view.proxy)
            self.view.proxy = copy.deepcopy(config)

            return self._commit(
                "save forwarding proxy",
                prior_view,
                lambda: self.store.set_forwarding_proxy(config),
                lambda: self.store.set_forwarding_proxy(previous)
            )

        return self._serialized(operation)

    def run(self, description: str, mutation: Callable[[], bool]) -> ActionResult:
        """Run a non-optimistic store mutation, then ask the supervisor to apply it"""
        def operation():
            try:
                if not mutation():
                    return ActionResult(success=False, message=f"Could not {description}")
            except ConflictError as e:
                return ActionResult(success=False, message=str(e))

            self.view = self.store.snapshot()
            try:
                self.messenger.update_proxy_settings()
            except (CommunicationError, ApplyError) as e:
                logger.error(f"Saved but failed to apply after {description}: {e}")
                return ActionResult(success=False, message=f"Saved, but the routing policy was not updated: {e}")
            return ActionResult(success=True, message=description.capitalize())

        return self._serialized(operation)
