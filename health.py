"""
Health checking for the supervisor
"""

import os
import threading
import time
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, Tuple

from logger import logger


class HealthChecker:
    """Health checker with caching and consecutive failure tracking"""

    COMPONENTS = ("store", "policy")

    def __init__(self, database, supervisor):
        self.database = database
        self.supervisor = supervisor

        self._health_cache = {
            component: {"healthy": False, "last_check": None, "error": None}
            for component in self.COMPONENTS
        }

        self.cache_duration = int(os.getenv('HEALTH_CACHE_DURATION', '30'))
        self._lock = threading.Lock()

        self._consecutive_failures = {component: 0 for component in self.COMPONENTS}
        self.max_consecutive_failures = int(os.getenv('HEALTH_MAX_CONSECUTIVE_FAILURES', '3'))

        self._validate_configuration()

    def _validate_configuration(self):
        """Validate health checker configuration"""
        if self.cache_duration < 0 or self.cache_duration > 300:
            raise ValueError(f"HEALTH_CACHE_DURATION must be between 0 and 300 seconds, got {self.cache_duration}")

        if self.max_consecutive_failures < 1 or self.max_consecutive_failures > 10:
            raise ValueError(f"HEALTH_MAX_CONSECUTIVE_FAILURES must be between 1 and 10, got {self.max_consecutive_failures}")

    def _is_cache_valid(self, component: str) -> bool:
        last_check = self._health_cache[component]["last_check"]
        if not last_check:
            return False

        return datetime.now() - last_check < timedelta(seconds=self.cache_duration)

    def _check_store_health(self) -> Tuple[bool, Optional[str]]:
        start_time = time.time()
        revision = self.database.read_revision()
        duration_ms = (time.time() - start_time) * 1000

        if revision is None:
            return False, "store document unreadable"
        logger.health_check("store", True, f"revision {revision} ({duration_ms:.1f}ms)")
        return True, None

    def _check_policy_health(self) -> Tuple[bool, Optional[str]]:
        state = self.supervisor.get_state()
        if not state["initialized"]:
            return False, "supervisor not initialized"
        if state["last_apply_success"] is False:
            return False, state["last_error"]
        return True, None

    def _update_health_cache(self, component: str, healthy: bool, error: Optional[str] = None):
        with self._lock:
            self._health_cache[component] = {
                "healthy": healthy,
                "last_check": datetime.now(),
                "error": error
            }

    def check(self, component: str) -> bool:
        """Check a component, using the cached result while it is fresh"""
        if self._is_cache_valid(component):
            return self._health_cache[component]["healthy"]

        checker = self._check_store_health if component == "store" else self._check_policy_health
        healthy, error = checker()
        if healthy:
            self._consecutive_failures[component] = 0
        else:
            self._consecutive_failures[component] += 1
            logger.health_check(component, False, error)
        self._update_health_cache(component, healthy, error)
        return healthy

    def is_healthy(self) -> bool:
        results = [self.check(component) for component in self.COMPONENTS]

        if any(count >= self.max_consecutive_failures for count in self._consecutive_failures.values()):
            return False

        return all(results)

    def get_health_status(self) -> Dict[str, Any]:
        """Get comprehensive health status with metrics"""
        overall_healthy = self.is_healthy()
        status = {
            "status": "healthy" if overall_healthy else "unhealthy",
            "timestamp": datetime.now().isoformat(),
            "consecutive_failures": dict(self._consecutive_failures),
            "supervisor": self.supervisor.get_state(),
            "metrics": logger.get_metrics()
        }
        for component in self.COMPONENTS:
            cached = self._health_cache[component]
            status[f"{component}_healthy"] = cached["healthy"]
            status[f"{component}_error"] = cached["error"]
            status[f"{component}_last_check"] = cached["last_check"].isoformat() if cached["last_check"] else None
        return status

    def force_refresh(self):
        """Force refresh of all health checks"""
        with self._lock:
            for component in self.COMPONENTS:
                self._health_cache[component]["last_check"] = None
