import json
import logging
import shutil
import subprocess
from typing import Optional

from tailscale_tui.config import ConfigError
from tailscale_tui.models import (
    CommandResult,
    ErrorKind,
    ExitNodeCandidate,
    StatusSnapshot,
)
from tailscale_tui.services.exit_nodes import derive_exit_nodes

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 15.0
SUDO_COMMAND = ["sudo", "-n"]


class TailscaleClient:
    """Status provider backed by the `tailscale` CLI."""

    includes_self = True

    def __init__(self, tailscale_path: str = "tailscale", timeout: float = COMMAND_TIMEOUT) -> None:
        self.tailscale_path = tailscale_path
        self.timeout = timeout

    def check_installed(self) -> str:
        """Resolve the binary path, raising ConfigError if it cannot be found."""
        resolved = shutil.which(self.tailscale_path)
        if resolved is None:
            raise ConfigError(f"tailscale binary not found: {self.tailscale_path}")
        return resolved

    def _execute(self, args: list[str]) -> CommandResult:
        try:
            result = subprocess.run(
                args,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            # subprocess.run kills the child before re-raising
            logger.warning("Command timed out after %ss: %s", self.timeout, " ".join(args))
            return CommandResult.timed_out()
        except OSError as exc:
            logger.warning("Unable to run %s: %s", args[0], exc)
            return CommandResult.failure(str(exc))
        stderr = (result.stderr or "").strip()
        return CommandResult(
            success=result.returncode == 0,
            output=(result.stdout or "").strip(),
            error=stderr or None,
            exit_code=result.returncode,
        )

    def _cli_call(self, *args: str) -> CommandResult:
        return self._execute([self.tailscale_path, *args])

    def _privileged_call(self, *args: str) -> CommandResult:
        result = self._cli_call(*args)
        if result.kind is not ErrorKind.PERMISSION_DENIED:
            return result
        logger.info("Permission denied for %s, retrying with sudo", " ".join(args))
        retry = self._execute([*SUDO_COMMAND, self.tailscale_path, *args])
        if retry.success or retry.kind is ErrorKind.TIMEOUT:
            return retry
        # keep the original denial so the failure still reads as a permission problem
        return CommandResult.failure(
            f"{result.error} (sudo retry: {retry.error or 'failed'})",
            exit_code=retry.exit_code or 1,
        )

    def get_status(self) -> Optional[StatusSnapshot]:
        result = self._cli_call("status", "--json")
        if not result.success or not result.output:
            logger.warning("tailscale status failed: %s", result.error or "No output")
            return None
        try:
            return StatusSnapshot.from_json(json.loads(result.output))
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Failed to parse tailscale status: %s", exc)
            return None

    def get_exit_nodes(self) -> list[ExitNodeCandidate]:
        status = self.get_status()
        if status is None:
            return []
        return derive_exit_nodes(status, status.active_exit_node_id(), include_self=self.includes_self)

    def set_exit_node(self, node_id: str) -> CommandResult:
        return self._privileged_call("exit-node", "set", node_id)

    def unset_exit_node(self) -> CommandResult:
        return self._privileged_call("exit-node", "unset")

    def ping(self, target: str) -> CommandResult:
        return self._cli_call("ping", "--c", "1", target)
