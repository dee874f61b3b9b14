"""Git access through the git CLI."""

import base64
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from paas_engine.core.errors import TransientInfrastructureError, ValidationError

logger = logging.getLogger(__name__)

_HTTPS = re.compile(r"^https?://", re.IGNORECASE)
_SAFE_REF = re.compile(r"^[A-Za-z0-9._/-]+$")


@dataclass
class CommitInfo:
    sha: str
    message: str


class GitClient:
    """
    Validates and clones repositories.

    Unreachable remotes and clone failures are transient; a missing branch
    or an unsupported URL is a validation error.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        username: str = "oauth2",
        timeout_seconds: int = 300,
    ):
        self._token = token
        self._username = username
        self._timeout = timeout_seconds

    # -------------------------
    # PUBLIC API
    # -------------------------

    def validate(self, git_url: str, branch: str) -> None:
        self._check_url(git_url)
        self._check_ref(branch)

        result = self._run(["ls-remote", "--exit-code", "--heads", git_url, branch])
        if result.returncode == 2:
            raise ValidationError(f'Git branch "{branch}" not found')
        if result.returncode != 0:
            raise TransientInfrastructureError(
                "Unable to access repository. Verify URL, credentials, and branch name."
            )

    def clone(
        self,
        git_url: str,
        branch: str,
        target_dir: str,
        commit: Optional[str] = None,
    ) -> CommitInfo:
        """Shallow clone of the branch head, or a full clone checked out at `commit`."""
        self._check_url(git_url)
        self._check_ref(branch)

        if commit:
            self._check_ref(commit)
            self._checked(["clone", "--branch", branch, git_url, target_dir], "Git clone failed")
            checkout = self._run(["-C", target_dir, "checkout", "--quiet", commit])
            if checkout.returncode != 0:
                raise ValidationError(f"Commit {commit} not found on branch {branch}")
        else:
            self._checked(
                ["clone", "--depth", "1", "--branch", branch, git_url, target_dir],
                "Git clone failed",
            )

        return self.head(target_dir)

    def head(self, repo_dir: str) -> CommitInfo:
        result = self._checked(["-C", repo_dir, "log", "-1", "--format=%H%n%s"], "git log failed")
        lines = result.stdout.splitlines()
        sha = lines[0].strip() if lines else ""
        message = lines[1].strip() if len(lines) > 1 else ""
        return CommitInfo(sha=sha, message=message)

    # -------------------------
    # INTERNALS
    # -------------------------

    def _check_url(self, git_url: str) -> None:
        if not git_url:
            raise ValidationError("Application has no git repository configured")
        if not (_HTTPS.match(git_url) or git_url.startswith("git@") or git_url.startswith("ssh://")):
            raise ValidationError("Unsupported git URL protocol. Use HTTPS or SSH.")

    def _check_ref(self, ref: str) -> None:
        if not ref or ref.startswith("-") or not _SAFE_REF.match(ref):
            raise ValidationError(f"Invalid git ref: {ref!r}")

    def _auth_args(self) -> List[str]:
        if not self._token:
            return []
        credentials = base64.b64encode(f"{self._username}:{self._token}".encode()).decode()
        return ["-c", f"http.extraHeader=Authorization: Basic {credentials}"]

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            return subprocess.run(
                ["git", *self._auth_args(), *args],
                capture_output=True,
                text=True,
                env=env,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientInfrastructureError(f"git {args[0]} timed out after {self._timeout}s") from e
        except FileNotFoundError as e:
            raise TransientInfrastructureError("git executable not found") from e

    def _checked(self, args: List[str], message: str) -> subprocess.CompletedProcess:
        result = self._run(args)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()
            reason = detail[-1] if detail else f"exit code {result.returncode}"
            logger.warning(f"[git] {message}: {reason}")
            raise TransientInfrastructureError(f"{message}: {reason}")
        return result
