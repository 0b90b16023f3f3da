"""
Installs and clears compiled policies on the host
"""

import os
import shlex
import subprocess
import threading
import time
from typing import List, Optional, Tuple

from models import ApplyResult
from policy import CompiledPolicy
from logger import logger


def run_command(cmd: List[str]) -> Tuple[bool, str]:
    """
    Execute a system command

    Returns:
        Tuple of (success: bool, output: str)
    """
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        return True, result.stdout
    except subprocess.CalledProcessError as e:
        return False, e.stderr or f"exit status {e.returncode}"
    except OSError as e:
        return False, str(e)


class PolicyApplier:
    """Base applier; subclasses implement _install and _uninstall"""

    def apply(self, policy: CompiledPolicy) -> ApplyResult:
        """Install policy, or clear the override when the policy routes nothing"""
        if policy.is_noop:
            return self.clear()

        start_time = time.time()
        result = self._install(policy)
        if result.success:
            logger.policy_applied(policy.digest, len(policy.mappings), (time.time() - start_time) * 1000)
        else:
            logger.error(f"Failed to apply policy: {result.error}", digest=policy.digest)
        return result

    def clear(self) -> ApplyResult:
        result = self._uninstall()
        if result.success:
            logger.policy_cleared("no active overrides and no forwarding proxy")
        else:
            logger.error(f"Failed to clear policy: {result.error}")
        return result

    def _install(self, policy: CompiledPolicy) -> ApplyResult:
        raise NotImplementedError

    def _uninstall(self) -> ApplyResult:
        raise NotImplementedError


class PacFileApplier(PolicyApplier):
    """
    Writes the PAC script to a file and runs optional host commands.

    Commands are shell-style strings formatted with ``{pac_file}`` and
    ``{pac_url}``, e.g. ``gsettings set org.gnome.system.proxy autoconfig-url {pac_url}``.
    """

    def __init__(self, pac_file: str = None, apply_command: str = None, clear_command: str = None,
                 pac_url: str = None, clear_retry_delay: float = None):
        self.pac_file = pac_file or os.getenv('PAC_FILE', os.path.expanduser('~/.hosts-router/proxy.pac'))
        self.apply_command = apply_command if apply_command is not None else os.getenv('PAC_APPLY_COMMAND', '')
        self.clear_command = clear_command if clear_command is not None else os.getenv('PAC_CLEAR_COMMAND', '')
        self.pac_url = pac_url or f"file://{os.path.abspath(self.pac_file)}"
        self.clear_retry_delay = clear_retry_delay if clear_retry_delay is not None else 0.1
        self._clear_timer: Optional[threading.Timer] = None
        self._installed = False
        self._lock = threading.Lock()

        self._validate_configuration()

    def _validate_configuration(self):
        for name, command in (("PAC_APPLY_COMMAND", self.apply_command), ("PAC_CLEAR_COMMAND", self.clear_command)):
            if command:
                try:
                    self._format_command(command)
                except (KeyError, ValueError) as e:
                    raise ValueError(f"{name} is not a valid command template: {e}")

        if self.clear_retry_delay < 0 or self.clear_retry_delay > 10:
            raise ValueError(f"clear_retry_delay must be between 0 and 10 seconds, got {self.clear_retry_delay}")

    def _format_command(self, template: str) -> List[str]:
        return shlex.split(template.format(pac_file=self.pac_file, pac_url=self.pac_url))

    def _cancel_clear_retry(self):
        if self._clear_timer is not None:
            self._clear_timer.cancel()
            self._clear_timer = None

    def _install(self, policy: CompiledPolicy) -> ApplyResult:
        with self._lock:
            self._cancel_clear_retry()
            self._installed = True
        try:
            directory = os.path.dirname(self.pac_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            temp_file = f"{self.pac_file}.tmp"
            with open(temp_file, 'w') as f:
                f.write(policy.script)
            os.replace(temp_file, self.pac_file)
        except OSError as e:
            return ApplyResult(success=False, action="apply", error=f"Could not write PAC file: {e}")

        if self.apply_command:
            success, output = run_command(self._format_command(self.apply_command))
            if not success:
                return ApplyResult(success=False, action="apply", error=f"Apply command failed: {output.strip()}")

        return ApplyResult(success=True, action="apply")

    def _uninstall(self) -> ApplyResult:
        with self._lock:
            self._cancel_clear_retry()
            self._installed = False
            result = self._remove_override()
        if result.success and self.clear_retry_delay > 0:
            # Some hosts keep serving a cached override after the first clear
            self._clear_timer = threading.Timer(self.clear_retry_delay, self._retry_clear)
            self._clear_timer.daemon = True
            self._clear_timer.start()
        return result

    def _retry_clear(self):
        with self._lock:
            if self._installed:
                return
            result = self._remove_override()
        if not result.success:
            logger.error(f"Failed to clear policy on retry: {result.error}")

    def _remove_override(self) -> ApplyResult:
        if self.clear_command:
            success, output = run_command(self._format_command(self.clear_command))
            if not success:
                return ApplyResult(success=False, action="clear", error=f"Clear command failed: {output.strip()}")

        try:
            os.remove(self.pac_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            return ApplyResult(success=False, action="clear", error=f"Could not remove PAC file: {e}")

        return ApplyResult(success=True, action="clear")
