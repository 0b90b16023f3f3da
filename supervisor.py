"""
Supervisor: owns the applied routing state and the recompute pipeline
"""

import os
import threading
import time
from typing import Any, Callable, Dict, Optional

from applier import PolicyApplier
from exceptions import ApplyError, ValidationError
from mapping import compile_effective_mapping
from models import UPDATE_ACTION, ChangeEvent, Group
from notifier import ChangeNotifier
from policy import CompiledPolicy, compile_policy
from rule_store import RuleStore
from logger import logger


DEFAULT_GROUP_NAME = "Default Group"
MAX_ERROR_COUNT = 3
ERROR_RESET_TIME = 60.0


class RoutingSupervisor:
    """
    Holds the effective mapping and the applied policy.

    Only the supervisor talks to the policy applier. Local store changes are
    recomputed synchronously; changes arriving through the store feed from
    other contexts are batched behind a short throttle. An apply failure
    after a local change does not fail the store write that caused it: it is
    logged and recorded in the error state, and callers that need the outcome
    ask through recompute_and_apply or handle_message.
    """

    def __init__(self, store: RuleStore, notifier: ChangeNotifier, applier: PolicyApplier,
                 throttle_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.notifier = notifier
        self.applier = applier
        self.throttle_seconds = throttle_seconds if throttle_seconds is not None else int(os.getenv('PROXY_UPDATE_THROTTLE_MS', '300')) / 1000.0
        self._clock = clock

        self._lock = threading.RLock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._throttle_timer: Optional[threading.Timer] = None

        self._validate_configuration()
        self._reset_state()

    def _validate_configuration(self):
        if self.throttle_seconds < 0 or self.throttle_seconds > 10:
            raise ValueError(f"PROXY_UPDATE_THROTTLE_MS must be between 0 and 10000, got {self.throttle_seconds * 1000:.0f}")

    def _reset_state(self):
        self.active_mapping: Dict[str, str] = {}
        self.current_policy: Optional[CompiledPolicy] = None
        self.applied_digest: Optional[str] = None
        self.error_count = 0
        self.last_error: Optional[str] = None
        self.last_update_time: Optional[float] = None
        self.last_apply_success: Optional[bool] = None
        self.initialized = False

    def init(self):
        """Migrate the store, seed defaults, subscribe and apply the current state"""
        with self._lock:
            if self.initialized:
                return

            self.store.database.migrate()
            document = self.store.snapshot()
            self.notifier.reset(document.revision)
            self._unsubscribe = self.notifier.subscribe(self._on_change, supervisor=True)

            if not document.groups:
                logger.info("No groups found, creating default group")
                self.store.add_group(Group(id="default", name=DEFAULT_GROUP_NAME), make_active=True)
            elif not document.active_groups and not document.proxy.is_configured:
                logger.info("No active groups, activating all groups")
                for group in document.groups:
                    self.store.set_group_active(group.id, True)

            self.initialized = True
            self.recompute_and_apply()
            logger.info("Supervisor initialized",
                        mapping_size=len(self.active_mapping),
                        revision=self.notifier.last_revision)

    def reset(self):
        """Drop subscriptions, pending work and all derived state"""
        with self._lock:
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            self._cancel_throttle()
            self._reset_state()

    def shutdown(self, clear_policy: bool = False):
        with self._lock:
            if clear_policy:
                result = self.applier.clear()
                if not result.success:
                    logger.error(f"Failed to clear policy on shutdown: {result.error}")
            self.reset()

    def _on_change(self, event: ChangeEvent):
        if event.source != "local":
            self.schedule_recompute()
            return
        # The write is already committed; the failure lives in get_state()
        try:
            self.recompute_and_apply()
        except ApplyError as e:
            logger.error(f"Failed to apply routing policy after {event.operation}: {e}")

    def _cancel_throttle(self):
        if self._throttle_timer is not None:
            self._throttle_timer.cancel()
            self._throttle_timer = None

    def schedule_recompute(self):
        """Recompute after the throttle window, coalescing bursts of changes"""
        with self._lock:
            self._cancel_throttle()
            self._throttle_timer = threading.Timer(self.throttle_seconds, self._throttled_recompute)
            self._throttle_timer.daemon = True
            self._throttle_timer.start()

    def _throttled_recompute(self):
        try:
            self.recompute_and_apply()
        except ApplyError as e:
            logger.error(f"Failed to update routing policy: {e}")

    def _check_error_circuit(self):
        if self.error_count < MAX_ERROR_COUNT:
            return
        elapsed = self._clock() - (self.last_update_time or 0)
        if elapsed < ERROR_RESET_TIME:
            raise ApplyError(
                f"Policy updates paused after {self.error_count} consecutive failures; "
                f"retrying in {ERROR_RESET_TIME - elapsed:.0f}s (last error: {self.last_error})"
            )
        logger.info("Resetting policy update error counter")
        self.error_count = 0

    def recompute_and_apply(self) -> CompiledPolicy:
        """
        Rebuild the effective mapping and policy from the store and install it.

        Returns the policy now in effect. Raises ApplyError when the host
        rejects the policy or updates are paused by the error circuit.
        """
        with self._lock:
            self._cancel_throttle()
            self._check_error_circuit()
            self.last_update_time = self._clock()

            document = self.store.snapshot()
            mapping = compile_effective_mapping(document.groups, document.active_groups)
            try:
                policy = compile_policy(mapping, document.proxy)
            except ValidationError as e:
                self._record_failure(f"Invalid stored rule: {e}")
                raise ApplyError(self.last_error) from e

            self.active_mapping = mapping
            self.notifier.reset(max(self.notifier.last_revision, document.revision))
            logger.recompute(len(mapping), bool(policy.fallback))

            target_digest = None if policy.is_noop else policy.digest
            if self.last_apply_success and target_digest == self.applied_digest:
                logger.debug("Routing policy unchanged, skipping apply")
                self.current_policy = policy
                return policy

            result = self.applier.apply(policy)
            if not result.success:
                self._record_failure(result.error or "unknown error")
                raise ApplyError(self.last_error)

            self.error_count = 0
            self.last_error = None
            self.last_apply_success = True
            self.applied_digest = target_digest
            self.current_policy = policy
            return policy

    def _record_failure(self, error: str):
        self.error_count += 1
        self.last_error = error
        self.last_apply_success = False
        self.applied_digest = None
        if self.error_count >= MAX_ERROR_COUNT:
            logger.warning(f"Policy update failed {self.error_count} times, pausing updates for {ERROR_RESET_TIME:.0f}s")

    def handle_message(self, message: Any) -> Dict[str, Any]:
        """Answer a control message from another context"""
        if not isinstance(message, dict) or message.get("action") != UPDATE_ACTION:
            action = message.get("action") if isinstance(message, dict) else None
            return {"success": False, "error": f"Unknown action: {action!r}"}

        try:
            self.recompute_and_apply()
        except ApplyError as e:
            logger.error(f"Failed to update proxy settings: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True}

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "initialized": self.initialized,
                "mapping_size": len(self.active_mapping),
                "policy_digest": self.applied_digest,
                "policy_active": self.applied_digest is not None,
                "last_apply_success": self.last_apply_success,
                "last_error": self.last_error,
                "error_count": self.error_count
            }
