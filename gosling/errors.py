"""Error taxonomy for the turn engine.

Tool failures and permission denials are not raised past the dispatcher;
they resolve as ToolResult values the model can see. The exceptions here
cover what the Turn Controller must classify: provider failures
(transient vs permanent), cancellation, corrupt persisted state, and
configuration that cannot be resolved.
"""

from __future__ import annotations

from gosling.session.schemas import ToolErrorKind


class GoslingError(Exception):
    """Base class for engine errors."""


# --- Provider ---


class ProviderError(GoslingError):
    """A model backend call failed."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Rate limit, overload or network failure. Retryable with backoff."""

    transient = True


class PermanentProviderError(ProviderError):
    """Auth or invalid-request failure. Fatal to the turn."""


class ModelResolutionError(GoslingError):
    """A role binding names a provider the engine was not given."""

    def __init__(self, message: str, *, role: str | None = None, provider: str | None = None) -> None:
        super().__init__(message)
        self.role = role
        self.provider = provider


# --- Tools ---


class ToolExecutionError(GoslingError):
    """A tool call failed inside or on the way to an extension."""

    kind: ToolErrorKind = ToolErrorKind.APPLICATION

    def __init__(self, message: str, *, kind: ToolErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ExtensionTransportError(ToolExecutionError):
    """The RPC channel to an extension broke."""

    kind = ToolErrorKind.TRANSPORT


class ExtensionUnavailable(ToolExecutionError):
    """The target extension is disconnected or failed; it was not contacted."""

    kind = ToolErrorKind.UNAVAILABLE


# --- Context ---


class CompactionFailed(GoslingError):
    """The summarization call errored or produced an unusable summary."""


class ContextOverflow(GoslingError):
    """Compaction failed and the window is still exceeded."""

    def __init__(self, ratio: float) -> None:
        super().__init__(f"Context usage at {ratio:.0%} of window after failed compaction")
        self.ratio = ratio


# --- Session ---


class SessionCancelled(GoslingError):
    """The session's cancellation token fired while awaiting."""


class SessionCorrupt(GoslingError):
    """Persisted session state failed to deserialize. The session is unusable."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id
