"""
Request/response channel from UI contexts to the supervisor
"""

import os
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from exceptions import ApplyError, CommunicationError
from models import UPDATE_ACTION
from logger import logger


Transport = Callable[[Dict[str, Any], float], Any]


class MessengerState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class HttpTransport:
    """Posts control messages to the supervisor's control endpoint"""

    def __init__(self, control_url: str, session: requests.Session = None):
        self.control_url = control_url.rstrip('/')
        self.session = session or requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})

    def __call__(self, message: Dict[str, Any], timeout: float) -> Any:
        response = self.session.post(f"{self.control_url}/control", json=message, timeout=timeout)
        if response.status_code != 200:
            raise CommunicationError(f"Supervisor answered HTTP {response.status_code}")
        return response.json()


class Messenger:
    """
    Sends a control message with a per-attempt timeout and linear backoff.

    Transport failures, timeouts and malformed responses are retried. A
    well-formed ``{"success": false}`` answer means the supervisor tried and
    failed to apply the policy; that is raised as ApplyError immediately.
    A timed-out attempt is abandoned, not cancelled, so the supervisor may
    still act on it.
    """

    def __init__(self, transport: Transport = None, wake: Callable[[], Any] = None,
                 control_url: str = None, max_attempts: int = None, retry_delay: float = None,
                 timeout: float = None, sleep: Callable[[float], None] = time.sleep):
        self.control_url = control_url or os.getenv('CONTROL_URL', 'http://127.0.0.1:8765')
        self.transport = transport or HttpTransport(self.control_url)
        self.wake = wake
        self.max_attempts = max_attempts or int(os.getenv('MESSENGER_MAX_ATTEMPTS', '3'))
        self.retry_delay = retry_delay if retry_delay is not None else float(os.getenv('MESSENGER_RETRY_DELAY', '1.0'))
        self.timeout = timeout or float(os.getenv('MESSENGER_TIMEOUT', '10.0'))
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="messenger")
        self.state = MessengerState.IDLE

        self._validate_configuration()

    def _validate_configuration(self):
        if self.max_attempts < 1 or self.max_attempts > 10:
            raise ValueError(f"MESSENGER_MAX_ATTEMPTS must be between 1 and 10, got {self.max_attempts}")

        if self.retry_delay < 0 or self.retry_delay > 60:
            raise ValueError(f"MESSENGER_RETRY_DELAY must be between 0 and 60 seconds, got {self.retry_delay}")

        if self.timeout <= 0 or self.timeout > 300:
            raise ValueError(f"MESSENGER_TIMEOUT must be between 0 and 300 seconds, got {self.timeout}")

    def _wake(self):
        if self.wake is None:
            return
        try:
            self.wake()
        except Exception as e:
            logger.debug(f"Wake step failed, sending anyway: {e}")

    def _attempt(self, message: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        future = self._executor.submit(self.transport, message, timeout)
        try:
            response = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise CommunicationError(f"Message timeout after {timeout}s")

        if not isinstance(response, dict) or not isinstance(response.get("success"), bool):
            raise CommunicationError("Invalid response from supervisor")
        if not response["success"]:
            raise ApplyError(response.get("error") or "Supervisor failed to apply the routing policy")
        return response

    def send(self, message: Dict[str, Any], max_attempts: int = None, retry_delay: float = None,
             timeout: float = None) -> Dict[str, Any]:
        max_attempts = max_attempts or self.max_attempts
        retry_delay = self.retry_delay if retry_delay is None else retry_delay
        timeout = timeout or self.timeout
        action = message.get("action", "unknown")

        last_error: Optional[str] = None
        for attempt in range(1, max_attempts + 1):
            self._wake()
            self.state = MessengerState.SENDING
            start_time = time.time()
            try:
                response = self._attempt(message, timeout)
            except ApplyError:
                self.state = MessengerState.FAILED
                logger.messenger_attempt(action, attempt, max_attempts, False, (time.time() - start_time) * 1000,
                                         error="supervisor could not apply policy")
                raise
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.messenger_attempt(action, attempt, max_attempts, False, (time.time() - start_time) * 1000,
                                         error=last_error)
                if attempt < max_attempts:
                    self.state = MessengerState.RETRYING
                    self._sleep(retry_delay * attempt)
                continue

            self.state = MessengerState.SUCCESS
            logger.messenger_attempt(action, attempt, max_attempts, True, (time.time() - start_time) * 1000)
            return response

        self.state = MessengerState.FAILED
        raise CommunicationError(
            f"Failed to send {action} after {max_attempts} attempts: {last_error or 'Unknown error'}",
            attempts=max_attempts,
            last_error=last_error
        )

    def update_proxy_settings(self) -> Dict[str, Any]:
        """Ask the supervisor to recompute and apply the routing policy now"""
        return self.send({"action": UPDATE_ACTION}, max_attempts=5, retry_delay=1.5, timeout=15.0)

    def close(self):
        self._executor.shutdown(wait=False)
