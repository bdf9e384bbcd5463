"""
session.py - Per-document shell state (working directory and environment).

The SessionStore is an explicit object handed to every caller that needs
it; there is no module-level registry. Sessions are created lazily on first
access, live as long as the store, and are replaced (never merged) on reset.

Two paths update a session:

* apply_statements: a best-effort, line-oriented scan of block text for
  ``cd``, ``export NAME=VALUE`` and ``NAME=VALUE`` that runs before spawn.
* reconcile: merges what the child reported through the state file
  (reconciled_cwd and env_delta) after the execution completes.

Usage:
    from mdrun.runtime.session import SessionStore, apply_statements, reconcile

    store = SessionStore()
    session = store.get_or_create("/abs/doc.md")
    apply_statements(block.content, session)
    ...
    reconcile(session, result)
"""

from __future__ import annotations

import logging
import os
import re
from typing import Callable, Dict, Mapping, Optional

from .types import ExecutionResult, Session

logger = logging.getLogger(__name__)

NOFILE_SUFFIX = "::nofile"

_CD_PATTERN = re.compile(r"^cd\s+([^;|&]+)")
_EXPORT_PATTERN = re.compile(r"^export\s+([A-Za-z_][A-Za-z0-9_]*)=(.+)$")
_ASSIGN_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.+)$")
_BRACED_REF = re.compile(r"\$\{([A-Za-z0-9_]+)\}")
_BARE_REF = re.compile(r"\$([A-Za-z0-9_]+)")


class SessionStore:
    """Map from document key to its Session.

    Args:
        environ_factory: Returns the environment a new session is seeded with.
            Defaults to a copy of os.environ.
        cwd_factory: Returns the working directory for unsaved documents.
            Defaults to os.getcwd.
    """

    def __init__(
        self,
        environ_factory: Optional[Callable[[], Mapping[str, str]]] = None,
        cwd_factory: Optional[Callable[[], str]] = None,
    ):
        self._environ_factory = environ_factory or (lambda: os.environ)
        self._cwd_factory = cwd_factory or os.getcwd
        self._sessions: Dict[str, Session] = {}

    def key_for(self, doc_path: Optional[str]) -> str:
        """Absolute path for saved documents, ``<cwd>::nofile`` otherwise."""
        if not doc_path:
            return self._cwd_factory() + NOFILE_SUFFIX
        return os.path.abspath(os.path.expanduser(doc_path))

    def _new_session(self, key: str, doc_path: Optional[str]) -> Session:
        if doc_path:
            cwd = os.path.dirname(key)
        else:
            cwd = self._cwd_factory()
        return Session(key=key, cwd=cwd, environment=dict(self._environ_factory()))

    def get_or_create(self, doc_path: Optional[str]) -> Session:
        """Return the session for a document, creating it on first access."""
        key = self.key_for(doc_path)
        session = self._sessions.get(key)
        if session is None:
            session = self._new_session(key, doc_path)
            self._sessions[key] = session
            logger.debug("Created session %s (cwd=%s)", key, session.cwd)
        return session

    def reset(self, doc_path: Optional[str]) -> Session:
        """Replace a document's session with a fresh one."""
        key = self.key_for(doc_path)
        session = self._new_session(key, doc_path)
        self._sessions[key] = session
        logger.info("Session reset for %s", key)
        return session

    def get(self, doc_path: Optional[str]) -> Optional[Session]:
        """Return an existing session without creating one."""
        return self._sessions.get(self.key_for(doc_path))

    def summary(self, doc_path: Optional[str]) -> str:
        """One-line description, e.g. ``CWD: /tmp | 42 env vars``."""
        session = self.get_or_create(doc_path)
        return f"CWD: {session.cwd} | {len(session.environment)} env vars"

    def __len__(self) -> int:
        return len(self._sessions)


# =============================================================================
# Statement scanning
# =============================================================================


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def substitute_env_vars(value: str, env: Mapping[str, str]) -> str:
    """Replace ${NAME} and $NAME with values from env (missing names become "").

    Single pass; substituted text is not expanded again.
    """

    def lookup(match: "re.Match[str]") -> str:
        return env.get(match.group(1), "")

    def expand_piece(piece: str) -> str:
        return _BARE_REF.sub(lookup, piece)

    # Braced references first, then bare ones in the text between them, so
    # the value a braced reference produced is never rescanned.
    out = []
    last = 0
    for match in _BRACED_REF.finditer(value):
        out.append(expand_piece(value[last:match.start()]))
        out.append(lookup(match))
        last = match.end()
    out.append(expand_piece(value[last:]))
    return "".join(out)


def _assignment_value(raw: str, env: Mapping[str, str]) -> str:
    # Quotes of either kind are removed first; substitution applies to all values.
    return substitute_env_vars(_unquote(raw.strip()).strip(), env)


def _resolve_cd(arg: str, cwd: str) -> str:
    target = os.path.expanduser(_unquote(arg.strip()))
    if not os.path.isabs(target):
        target = os.path.join(cwd, target)
    return os.path.normpath(target)


def apply_statements(text: str, session: Session) -> None:
    """Apply leading cd/export/assignment statements in text to session, in place.

    Compound statements (``&&`` chains, subshells, conditionals) are not
    modeled; the state-file reconciliation corrects what this scan misses.
    """
    env = session.environment
    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        cd_match = _CD_PATTERN.match(stripped)
        if cd_match:
            session.cwd = _resolve_cd(cd_match.group(1), session.cwd)
            continue

        assign = _EXPORT_PATTERN.match(stripped) or _ASSIGN_PATTERN.match(stripped)
        if assign:
            name, raw_value = assign.group(1), assign.group(2)
            env[name] = _assignment_value(raw_value, env)


# =============================================================================
# Reconciliation
# =============================================================================


def reconcile(session: Session, result: ExecutionResult) -> bool:
    """Merge the child's reported cwd and env changes into session.

    Returns:
        True when the session changed.
    """
    changed = False
    if result.reconciled_cwd and result.reconciled_cwd != session.cwd:
        logger.debug("Reconciled cwd %s -> %s", session.cwd, result.reconciled_cwd)
        session.cwd = result.reconciled_cwd
        changed = True

    for name, value in result.env_delta.items():
        if value is None:
            if session.environment.pop(name, None) is not None:
                changed = True
        elif session.environment.get(name) != value:
            session.environment[name] = value
            changed = True
    return changed
