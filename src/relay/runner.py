"""
Command runner for relay.

Executes shell steps with variable substitution, secret masking,
wall-clock timeouts and cooperative cancellation.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import re
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, Optional

from relay.errors import RelayError


MASK = "***"

# {inputs.name} or {matrix.name}; shell ${VAR} and escaped {{...}} are left alone
PLACEHOLDER_PATTERN = re.compile(r"(?<!\$)\{((?:inputs|matrix)\.[\w-]+)\}")


class CommandCancelled(RelayError):
    """Raised when a running command is stopped by run cancellation."""
    pass


def find_placeholders(template: str) -> list:
    """Return placeholder names in a template, ignoring escaped braces."""
    stripped = template.replace("{{", "").replace("}}", "")
    return PLACEHOLDER_PATTERN.findall(stripped)


def _stringify(value: object) -> str:
    # Booleans render the way YAML and shells spell them
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute(template: str, variables: Dict[str, object]) -> str:
    """
    Substitute {variable} placeholders in a string.

    Supports escaping with double braces: {{text}} becomes {text}

    Example:
        >>> substitute("build {inputs.service}", {"inputs.service": "api"})
        'build api'
        >>> substitute("echo {{literal}}", {})
        'echo {literal}'
    """
    escape_open = "\x00ESCAPED_OPEN\x00"
    escape_close = "\x00ESCAPED_CLOSE\x00"
    result = template.replace("{{", escape_open).replace("}}", escape_close)

    def replace(match):
        key = match.group(1)
        return _stringify(variables[key]) if key in variables else match.group(0)

    result = PLACEHOLDER_PATTERN.sub(replace, result)
    return result.replace(escape_open, "{").replace(escape_close, "}")


def _kill(proc: subprocess.Popen) -> None:
    """Kill a command and everything it started."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class CommandRunner:
    """Executes shell commands with variable substitution."""

    poll_interval = 0.1

    def __init__(
        self,
        dry_run: bool = False,
        verbose: bool = False,
        secrets: Optional[Iterable[str]] = None,
    ):
        """
        Initialize command runner.

        Args:
            dry_run: If True, only show what would be executed
            verbose: Enable verbose logging
            secrets: Secret values to mask in every log line and error
        """
        self.dry_run = dry_run
        self.verbose = verbose
        # Longest first so a secret containing another is fully masked
        self.secrets = sorted({s for s in (secrets or ()) if s}, key=len, reverse=True)
        self.logger = logging.getLogger(__name__)

    def mask(self, text: Optional[str]) -> Optional[str]:
        """Replace every known secret value in text with ***."""
        if not text:
            return text
        for secret in self.secrets:
            text = text.replace(secret, MASK)
        return text

    def substitute_variables(self, command: str, variables: Dict[str, object]) -> str:
        """
        Substitute variables in command string, warning on leftovers.

        Args:
            command: Command template with {variable} placeholders
            variables: Dict of variable name -> value

        Returns:
            Command with variables substituted
        """
        result = substitute(command, variables)

        remaining = [name for name in find_placeholders(command) if name not in variables]
        if remaining:
            self.logger.warning(f"Unsubstituted variables: {remaining}")

        return result

    def run(
        self,
        command: str,
        variables: Optional[Dict[str, object]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        check: bool = True,
    ) -> Optional[subprocess.CompletedProcess]:
        """
        Execute a shell command with variable substitution.

        Args:
            command: Command to execute (may contain {variable} placeholders)
            variables: Dict of variables to substitute
            env: Extra environment variables (secrets are passed here)
            cwd: Working directory
            timeout: Wall-clock limit in seconds
            cancel_event: When set, the command is killed
            check: Raise exception on non-zero exit code

        Returns:
            CompletedProcess if executed, None if dry_run

        Raises:
            subprocess.CalledProcessError: If command fails and check=True
            subprocess.TimeoutExpired: If the timeout elapses
            CommandCancelled: If cancel_event is set while running
        """
        final_command = self.substitute_variables(command, variables or {})
        shown = self.mask(final_command)

        if self.dry_run:
            self.logger.info("[DRY RUN] Would execute:")
            self.logger.info(f"  {shown}")
            return None

        if len(shown) > 100:
            log_msg = f"Executing: {shown[:100]}..."
        else:
            log_msg = f"Executing: {shown}"
        self.logger.info(log_msg)

        full_env = os.environ.copy()
        if env:
            full_env.update({k: str(v) for k, v in env.items()})

        proc = subprocess.Popen(
            final_command,
            shell=True,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            # Own process group, so a kill reaches children of the shell
            start_new_session=True,
        )
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _kill(proc)
                    proc.communicate()
                    self.logger.warning(f"Cancelled: {shown}")
                    raise CommandCancelled(f"Command cancelled: {shown}")
                if deadline is not None and time.monotonic() >= deadline:
                    _kill(proc)
                    stdout, stderr = proc.communicate()
                    self.logger.error(f"Command timed out after {timeout}s")
                    raise subprocess.TimeoutExpired(
                        shown, timeout, output=self.mask(stdout), stderr=self.mask(stderr)
                    )

        stdout = self.mask(stdout)
        stderr = self.mask(stderr)
        result = subprocess.CompletedProcess(shown, proc.returncode, stdout, stderr)

        if result.returncode != 0:
            self.logger.error(f"Command failed with exit code {result.returncode}")
            if stdout:
                self.logger.error(f"STDOUT:\n{stdout}")
            if stderr:
                self.logger.error(f"STDERR:\n{stderr}")
            if check:
                raise subprocess.CalledProcessError(
                    result.returncode, shown, output=stdout, stderr=stderr
                )
            return result

        if self.verbose and stdout:
            self.logger.debug(f"STDOUT:\n{stdout}")
        if stderr:
            self.logger.warning(f"STDERR:\n{stderr}")

        return result


def expand_path(path: str, base: Optional[Path] = None) -> Path:
    """
    Expand ~ and resolve a path, relative paths against base.

    Example:
        >>> expand_path("dist", Path("/work"))
        PosixPath('/work/dist')
    """
    expanded = Path(path).expanduser()
    if not expanded.is_absolute() and base is not None:
        expanded = Path(base) / expanded
    return expanded.resolve()
