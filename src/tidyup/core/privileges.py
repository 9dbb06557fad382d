"""Privilege escalation for files the current user cannot delete.

A :class:`SudoManager` authenticates once per run, keeps the ``sudo``
timestamp fresh while privileged work is pending, and removes paths
through an ordered ladder of strategies.  The password lives only inside
a :class:`Secret` and is zeroed when the run ends.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import stat
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable

from tidyup.core.pathvalidator import PathValidationError, PathValidator

log = logging.getLogger(__name__)

# Timeouts for the external commands (seconds).
_VALIDATE_TIMEOUT = 15
_SESSION_CHECK_TIMEOUT = 5
_KEEPALIVE_TIMEOUT = 10
_RM_TIMEOUT = 30
_BATCH_TIMEOUT = 60
_PKEXEC_TIMEOUT = 60
_RMDIR_TIMEOUT = 120
_INVALIDATE_TIMEOUT = 5

SESSION_LIFETIME = 300.0
REFRESH_MARGIN = 60.0
KEEPALIVE_INTERVAL = 240.0
BATCH_SIZE = 50
MAX_RETRIES = 3
MAX_PASSWORD_ATTEMPTS = 3

_RETRYABLE_MARKERS = (
    "resource temporarily unavailable",
    "text file busy",
    "device or resource busy",
    "operation timed out",
    "timed out",
    "connection refused",
    "broken pipe",
    "no such process",
)
_BAD_PASSWORD_MARKERS = ("Sorry", "incorrect password", "try again")

PasswordProvider = Callable[[int], "str | None"]


class PrivilegeError(Exception):
    """Raised when privilege escalation or an elevated command fails."""


def is_root() -> bool:
    """Check if the current process is running as root."""
    return os.geteuid() == 0


def sudo_available() -> bool:
    """Check if sudo is available on the system."""
    return shutil.which("sudo") is not None


def pkexec_available() -> bool:
    """Check if pkexec is available on the system."""
    return shutil.which("pkexec") is not None


def is_retryable_error(error: BaseException | str | None) -> bool:
    """Whether an elevated command failure looks transient."""
    if error is None:
        return False
    text = str(error).lower()
    return any(marker in text for marker in _RETRYABLE_MARKERS)


class Secret:
    """In-memory credential that can be fed to a command and wiped.

    The backing buffer is a ``bytearray`` overwritten with zeros by
    :meth:`clear` (also run on garbage collection).  The raw bytes are
    never handed out; :meth:`run` pipes them to a child's stdin.
    """

    __slots__ = ("_buf",)

    def __init__(self, value: str | bytes | bytearray) -> None:
        if isinstance(value, str):
            value = value.encode()
        self._buf = bytearray(value)

    def __bool__(self) -> bool:
        return any(self._buf)

    def __len__(self) -> int:
        return len(self._buf)

    def __repr__(self) -> str:
        return "Secret(***)" if self else "Secret(<cleared>)"

    @property
    def is_cleared(self) -> bool:
        return not any(self._buf)

    def run(self, cmd: list[str], timeout: float) -> subprocess.CompletedProcess:
        """Run *cmd* with the secret (plus newline) on stdin.

        Raises:
            subprocess.TimeoutExpired: If *cmd* exceeds *timeout*.
            OSError: If *cmd* cannot be started.
        """
        payload = bytearray(self._buf)
        payload += b"\n"
        try:
            return subprocess.run(cmd, input=payload, capture_output=True, timeout=timeout)
        finally:
            _zero(payload)

    def clear(self) -> None:
        _zero(self._buf)

    def __del__(self) -> None:
        self.clear()


def _zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


def _stderr(proc: subprocess.CompletedProcess) -> str:
    err = proc.stderr or b""
    if isinstance(err, bytes):
        err = err.decode(errors="replace")
    return err.strip()


def _gone(path: str) -> bool:
    try:
        os.lstat(path)
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return False


@dataclass(slots=True)
class SudoDeletionResult:
    """Outcome of removing one path through the strategy ladder."""

    path: str
    success: bool = False
    error: str = ""
    method: str = ""
    attempts: int = 0
    duration: float = 0.0


class RemovalStrategy:
    """One way of removing a path with elevated rights."""

    name = "base"

    def __init__(self, manager: SudoManager) -> None:
        self.manager = manager

    def available(self) -> bool:
        return True

    def attempt(self, path: str) -> None:
        """Remove *path*, raising :class:`PrivilegeError` on failure."""
        raise NotImplementedError


class SudoRemove(RemovalStrategy):
    name = "sudo"

    def attempt(self, path: str) -> None:
        self.manager.run_sudo(["rm", "-f", "--", path], _RM_TIMEOUT)


class RenameThenRemove(RemovalStrategy):
    """Move the path to an unpredictable sibling name, then remove that.

    Anything recreated at the original path after the rename is left
    alone.  If the removal fails the rename is undone on a best-effort
    basis.
    """

    name = "rename-delete"

    def attempt(self, path: str) -> None:
        temp = os.path.join(os.path.dirname(path), f".deleted_{secrets.token_hex(8)}")
        self.manager.run_sudo(["mv", "-f", "--", path, temp], _RM_TIMEOUT)
        try:
            self.manager.run_sudo(["rm", "-f", "--", temp], _RM_TIMEOUT)
        except PrivilegeError as e:
            try:
                self.manager.run_sudo(["mv", "-f", "--", temp, path], _RM_TIMEOUT)
            except PrivilegeError:
                log.warning("Could not restore %s from %s", path, temp)
            raise PrivilegeError(f"delete after rename failed: {e}") from e


class PkexecRemove(RemovalStrategy):
    name = "pkexec"

    def available(self) -> bool:
        return self.manager.use_pkexec and pkexec_available()

    def attempt(self, path: str) -> None:
        try:
            proc = subprocess.run(
                ["pkexec", "rm", "-f", "--", path],
                capture_output=True,
                timeout=_PKEXEC_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            raise PrivilegeError("pkexec rm timed out")
        except OSError as e:
            raise PrivilegeError(f"pkexec could not be started: {e}")

        if proc.returncode == 126:
            raise PrivilegeError("Authentication dismissed by user")
        if proc.returncode == 127:
            raise PrivilegeError("Authentication denied")
        if proc.returncode != 0:
            raise PrivilegeError(f"pkexec rm failed (exit {proc.returncode}): {_stderr(proc)}")


class SudoManager:
    """Owns the elevated session for one cleaning run.

    States: unauthenticated, authenticated (until ``session_expiry``),
    cleared.  Reads of the credential happen under a shared lock;
    authentication, refresh and :meth:`clear` take it exclusively.
    Elevated batch commands are single-flighted.
    """

    def __init__(
        self,
        password_provider: PasswordProvider | None = None,
        validator: PathValidator | None = None,
        use_pkexec: bool = True,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.password_provider = password_provider
        self.validator = validator or PathValidator()
        self.use_pkexec = use_pkexec
        self.max_retries = max_retries
        self.available = sudo_available()

        self._secret: Secret | None = None
        self._authenticated = False
        self._session_expiry = 0.0
        self._lock = threading.RLock()
        self._batch_lock = threading.Lock()
        self._keepalive_stop: threading.Event | None = None
        self._keepalive_thread: threading.Thread | None = None
        self._stats = {"deleted": 0, "failed": 0, "batches": 0, "fallbacks": 0}

        self.strategies: list[RemovalStrategy] = [
            SudoRemove(self),
            RenameThenRemove(self),
            PkexecRemove(self),
        ]

    # -- session ---------------------------------------------------------

    @property
    def authenticated(self) -> bool:
        with self._lock:
            return self._authenticated

    @property
    def secret(self) -> Secret | None:
        return self._secret

    def is_authenticated(self) -> bool:
        """Whether a session exists and has not expired."""
        with self._lock:
            return self._authenticated and time.monotonic() < self._session_expiry

    def check_session(self) -> bool:
        """Check for an existing sudo timestamp that needs no password."""
        try:
            proc = subprocess.run(["sudo", "-n", "true"], capture_output=True, timeout=_SESSION_CHECK_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError):
            return False
        return proc.returncode == 0

    def prompt_for_password(self) -> None:
        """Authenticate, asking the password provider if needed.

        An existing sudo session is reused without prompting.  The
        provider is asked up to three times while the password is wrong.

        Raises:
            PrivilegeError: If sudo is unavailable, the user declines, or
                authentication keeps failing.
        """
        if not self.available:
            raise PrivilegeError("sudo is not available on this system")

        if self.check_session():
            with self._lock:
                self._authenticated = True
                self._session_expiry = time.monotonic() + SESSION_LIFETIME
            log.info("Reusing existing sudo session")
            return

        if self.password_provider is None:
            raise PrivilegeError("No way to ask for a password")

        last_error = "no password entered"
        for attempt in range(1, MAX_PASSWORD_ATTEMPTS + 1):
            raw = self.password_provider(attempt)
            if not raw:
                raise PrivilegeError("Authentication dismissed by user")
            secret = Secret(raw)
            del raw
            try:
                self._validate(secret)
            except PrivilegeError as e:
                secret.clear()
                last_error = str(e)
                log.warning("sudo authentication attempt %d failed: %s", attempt, e)
                if "incorrect password" not in last_error:
                    time.sleep(attempt * 0.1)
                continue
            with self._lock:
                if self._secret is not None:
                    self._secret.clear()
                self._secret = secret
                self._authenticated = True
                self._session_expiry = time.monotonic() + SESSION_LIFETIME
            log.info("sudo authentication succeeded")
            return

        raise PrivilegeError(f"authentication failed after {MAX_PASSWORD_ATTEMPTS} attempts: {last_error}")

    def _validate(self, secret: Secret) -> None:
        try:
            proc = secret.run(["sudo", "-S", "-v"], _VALIDATE_TIMEOUT)
        except subprocess.TimeoutExpired:
            raise PrivilegeError("sudo command timed out")
        except OSError as e:
            raise PrivilegeError(f"sudo could not be started: {e}")
        if proc.returncode == 0:
            return
        err = _stderr(proc)
        if any(marker in err for marker in _BAD_PASSWORD_MARKERS):
            raise PrivilegeError("incorrect password")
        raise PrivilegeError(f"sudo validation failed (exit {proc.returncode}): {err}")

    def keep_alive(self) -> None:
        """Extend the sudo timestamp.

        Any failure drops the session back to unauthenticated.

        Raises:
            PrivilegeError: If there is no session or the refresh fails.
        """
        with self._lock:
            if not self._authenticated:
                raise PrivilegeError("not authenticated")
            secret = self._secret

        try:
            if secret is None:
                proc = subprocess.run(["sudo", "-n", "-v"], capture_output=True, timeout=_KEEPALIVE_TIMEOUT)
            else:
                proc = secret.run(["sudo", "-S", "-v"], _KEEPALIVE_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError) as e:
            self._expire()
            raise PrivilegeError(f"keep-alive failed: {e}")

        if proc.returncode != 0:
            self._expire()
            raise PrivilegeError(f"failed to keep sudo session alive: {_stderr(proc)}")

        with self._lock:
            self._session_expiry = time.monotonic() + SESSION_LIFETIME

    def _expire(self) -> None:
        with self._lock:
            self._authenticated = False

    def ensure_authenticated(self) -> None:
        """Refresh the session when it is about to expire.

        Raises:
            PrivilegeError: If not authenticated or the refresh fails.
        """
        with self._lock:
            if not self._authenticated:
                raise PrivilegeError("not authenticated: call prompt_for_password first")
            needs_refresh = time.monotonic() > self._session_expiry - REFRESH_MARGIN
        if needs_refresh:
            try:
                self.keep_alive()
            except PrivilegeError as e:
                raise PrivilegeError(f"session expired and refresh failed: {e}") from e

    def start_keep_alive(self, interval: float = KEEPALIVE_INTERVAL) -> None:
        """Refresh the session from a background thread every *interval* seconds."""
        if self._keepalive_thread is not None:
            return
        stop = threading.Event()

        def _loop() -> None:
            while not stop.wait(interval):
                try:
                    self.keep_alive()
                except PrivilegeError as e:
                    log.warning("Stopping sudo keep-alive: %s", e)
                    return

        self._keepalive_stop = stop
        self._keepalive_thread = threading.Thread(target=_loop, name="sudo-keepalive", daemon=True)
        self._keepalive_thread.start()

    def stop_keep_alive(self) -> None:
        if self._keepalive_stop is not None:
            self._keepalive_stop.set()
        if self._keepalive_thread is not None and self._keepalive_thread is not threading.current_thread():
            self._keepalive_thread.join(timeout=1)
        self._keepalive_stop = None
        self._keepalive_thread = None

    def clear(self) -> None:
        """Wipe the credential and invalidate the sudo timestamp."""
        self.stop_keep_alive()
        with self._lock:
            if self._secret is not None:
                self._secret.clear()
            self._authenticated = False
            self._session_expiry = 0.0
        threading.Thread(target=self._invalidate, name="sudo-invalidate", daemon=True).start()

    @staticmethod
    def _invalidate() -> None:
        try:
            subprocess.run(["sudo", "-k"], capture_output=True, timeout=_INVALIDATE_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError):
            log.debug("sudo -k failed")

    # -- commands --------------------------------------------------------

    def run_sudo(self, args: list[str], timeout: float) -> None:
        """Run ``sudo -S <args>`` with the stored credential.

        Raises:
            PrivilegeError: On missing session, timeout or non-zero exit.
        """
        self.ensure_authenticated()
        with self._lock:
            secret = self._secret
        cmd = ["sudo", "-S", *args] if secret is not None else ["sudo", "-n", *args]
        name = " ".join(args[:1])
        try:
            if secret is not None:
                proc = secret.run(cmd, timeout)
            else:
                proc = subprocess.run(cmd, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise PrivilegeError(f"sudo {name} timed out")
        except OSError as e:
            raise PrivilegeError(f"sudo could not be started: {e}")
        if proc.returncode != 0:
            raise PrivilegeError(f"sudo {name} failed (exit {proc.returncode}): {_stderr(proc)}")

    def delete_file_with_result(self, path: str) -> SudoDeletionResult:
        """Remove one path, trying each strategy in turn.

        Success means the path is verifiably gone, not merely that a
        command exited cleanly.
        """
        result = SudoDeletionResult(path=path)
        start = time.monotonic()
        try:
            try:
                self.validator.validate(path)
            except PathValidationError as e:
                result.error = f"path validation failed: {e}"
                return result

            if _gone(path):
                result.success = True
                result.method = "already-gone"
                return result

            last_error = "no removal strategy available"
            for strategy in self.strategies:
                if not strategy.available():
                    continue
                for attempt in range(1, self.max_retries + 1):
                    result.attempts += 1
                    try:
                        strategy.attempt(path)
                    except PrivilegeError as e:
                        last_error = str(e)
                        if not is_retryable_error(e):
                            break
                        time.sleep(attempt * attempt * 0.1)
                        continue
                    if _gone(path):
                        result.success = True
                        result.method = strategy.name
                        return result
                    last_error = "deletion reported success but file still exists"
            result.error = last_error
            return result
        finally:
            result.duration = time.monotonic() - start

    def delete_directory(self, path: str, recursive: bool = True) -> None:
        """Remove a directory with ``rm -rf`` (or ``rm -d`` when not recursive).

        Raises:
            PrivilegeError: On validation failure, command failure, or if
                the directory survives.
        """
        self.ensure_authenticated()
        try:
            self.validator.validate(path)
        except PathValidationError as e:
            raise PrivilegeError(f"path validation failed: {e}") from e
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise PrivilegeError(f"cannot inspect {path}: {e}") from e
        if not stat.S_ISDIR(st.st_mode):
            raise PrivilegeError(f"path is not a directory: {path}")

        flags = "-rf" if recursive else "-d"
        self.run_sudo(["rm", flags, "--", path], _RMDIR_TIMEOUT)
        if not _gone(path):
            raise PrivilegeError("directory still exists after deletion")

    def delete_files(self, paths: list[str]) -> tuple[list[str], dict[str, str]]:
        """Remove *paths* in batches of fifty.

        Returns:
            (succeeded, failed) where *failed* maps path to error text.
        """
        succeeded: list[str] = []
        failed: dict[str, str] = {}

        if not self.authenticated:
            return succeeded, {p: "not authenticated" for p in paths}

        for start in range(0, len(paths), BATCH_SIZE):
            batch = paths[start:start + BATCH_SIZE]
            ok, bad = self.delete_batch(batch)
            succeeded.extend(ok)
            failed.update(bad)
            if start + BATCH_SIZE < len(paths):
                try:
                    self.keep_alive()
                except PrivilegeError as e:
                    log.warning("sudo session lost between batches: %s", e)

        with self._lock:
            self._stats["deleted"] += len(succeeded)
            self._stats["failed"] += len(failed)
        return succeeded, failed

    def delete_batch(self, paths: list[str]) -> tuple[list[str], dict[str, str]]:
        """Remove one batch with a single elevated command.

        Every path is re-checked afterwards, even after a timeout, since the
        command may have finished late.  Survivors fall back to per-path
        removal.
        """
        succeeded: list[str] = []
        failed: dict[str, str] = {}

        try:
            self.ensure_authenticated()
        except PrivilegeError as e:
            return succeeded, {p: str(e) for p in paths}

        files: list[str] = []
        for path in paths:
            try:
                self.validator.validate(path)
            except PathValidationError as e:
                failed[path] = f"validation failed: {e}"
                continue
            try:
                st = os.lstat(path)
            except FileNotFoundError:
                succeeded.append(path)
                continue
            except OSError as e:
                failed[path] = str(e)
                continue
            if stat.S_ISDIR(st.st_mode):
                try:
                    self.delete_directory(path, recursive=True)
                    succeeded.append(path)
                except PrivilegeError as e:
                    failed[path] = str(e)
            else:
                files.append(path)

        if not files:
            return succeeded, failed

        with self._batch_lock:
            self._stats["batches"] += 1
            try:
                self.run_sudo(["rm", "-f", "--", *files], _BATCH_TIMEOUT)
                batch_error = None
            except PrivilegeError as e:
                batch_error = str(e)

            for path in files:
                if _gone(path):
                    succeeded.append(path)
                    continue
                self._stats["fallbacks"] += 1
                result = self.delete_file_with_result(path)
                if result.success:
                    succeeded.append(path)
                elif batch_error is None:
                    failed[path] = f"batch succeeded but file not deleted: {result.error}"
                else:
                    failed[path] = result.error
        return succeeded, failed

    def get_statistics(self) -> dict[str, object]:
        with self._lock:
            return {
                "authenticated": self._authenticated,
                "available": self.available,
                "pkexec_available": pkexec_available(),
                "session_remaining": max(0.0, self._session_expiry - time.monotonic()),
                **self._stats,
            }
