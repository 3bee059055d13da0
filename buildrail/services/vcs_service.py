"""
VCS Service
===========
Checks out a VCS root into an agent workspace on the host machine.

Philosophy:
    - Clone ONCE per agent + VCS root into <workspace_root>/<agent>/<root id>/
    - Reuse the SAME checkout for later runs: fetch, then force-checkout
    - Credentials are resolved from their handle only for the git call
    - Every git call gets the time left of the checkout deadline; git is
      killed when it runs out
"""
import logging
import os
import subprocess
import time
from typing import List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from buildrail.core.config import resolve_credential
from buildrail.core.errors import VcsError
from buildrail.models.vcs_root import VcsRoot

logger = logging.getLogger(__name__)


def authenticated_url(root: VcsRoot) -> str:
    """Insert username/secret into an https URL; other schemes are unchanged."""
    if root.auth is None or not root.url.startswith("https://"):
        return root.url
    secret = resolve_credential(root.auth.password)
    if not root.auth.username or secret is None:
        return root.url
    parts = urlsplit(root.url)
    netloc = f"{quote(root.auth.username, safe='')}:{quote(secret, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _git(args: List[str], cwd: str, root: VcsRoot, ref: str, deadline: Optional[float] = None) -> str:
    timeout = None
    if deadline is not None:
        timeout = deadline - time.monotonic()
        if timeout <= 0:
            raise VcsError(root.url, ref, f"checkout deadline passed before git {args[0]}")
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.error("git %s killed after %.1fs", args[0], timeout)
        raise VcsError(root.url, ref, f"git {args[0]} timed out") from e
    except subprocess.CalledProcessError as e:
        # stderr may echo the authenticated URL; report the plain one
        detail = (e.stderr or "").replace(authenticated_url(root), root.url).strip()
        logger.error("git %s failed: %s", args[0], detail)
        raise VcsError(root.url, ref, detail) from e
    except OSError as e:
        raise VcsError(root.url, ref, str(e)) from e
    return completed.stdout.strip()


def checkout(
    root: VcsRoot, dest_path: str, branch: str = "", commit: str = "", timeout: Optional[float] = None,
) -> str:
    """
    Make ``dest_path`` a working tree of ``root`` at ``commit`` (or branch head).

    ``timeout`` (seconds) bounds the whole checkout, not each git call.

    Returns
    -------
    str
        Absolute path of the working tree.
    """
    ref = branch or root.branch
    dest_path = os.path.abspath(dest_path)
    url = authenticated_url(root)
    deadline = time.monotonic() + timeout if timeout else None

    if not os.path.isdir(os.path.join(dest_path, ".git")):
        os.makedirs(os.path.dirname(dest_path), exist_ok=True)
        logger.info("Cloning %s into %s", root.url, dest_path)
        _git(["clone", "--no-checkout", url, dest_path],
             cwd=os.path.dirname(dest_path), root=root, ref=ref, deadline=deadline)
    else:
        logger.info("Reusing workspace %s for %s", dest_path, root.id)

    _git(["fetch", "--force", url, ref], cwd=dest_path, root=root, ref=ref, deadline=deadline)
    _git(["checkout", "--force", commit or "FETCH_HEAD"], cwd=dest_path, root=root, ref=ref, deadline=deadline)
    _git(["clean", "-fdx", "-e", ".gradle"], cwd=dest_path, root=root, ref=ref, deadline=deadline)

    head = _git(["rev-parse", "HEAD"], cwd=dest_path, root=root, ref=ref, deadline=deadline)
    logger.info("Checked out %s@%s (%s)", root.id, ref, head[:12])
    return dest_path
