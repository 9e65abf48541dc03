"""Error taxonomy for the Jarvis hub.

Every failure that crosses a component boundary is one of these.  The
``code`` attribute is the stable, machine-readable identifier sent to
clients in ``error`` / ``tool_error`` events.
"""

from __future__ import annotations


class JarvisError(Exception):
    """Base class for all hub errors."""

    code: str = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class MalformedMessage(JarvisError):
    """Inbound payload could not be parsed; the connection stays open."""

    code = "malformed_message"


class UnknownIntent(JarvisError):
    """Free text matched no intent pattern."""

    code = "unknown_intent"


class SkillNotFound(JarvisError):
    """No skill is registered under the requested tool name."""

    code = "skill_not_found"


class CapabilityNotSupported(JarvisError):
    """The target skill or device does not support the requested command."""

    code = "capability_not_supported"


class SkillExecutionError(JarvisError):
    """A skill raised, returned ``ok: False``, or timed out.

    ``code`` defaults to ``skill_execution_error`` but carries through a more
    specific code the skill reported in its result.
    """

    code = "skill_execution_error"

    def __init__(
        self, message: str = "", *, tool: str = "", action: str = "", code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.action = action
        if code:
            self.code = code


class AuthorizationError(JarvisError):
    """Base for failures of the gated authorization flow."""

    code = "authorization_error"


class AuthorizationDenied(AuthorizationError):
    code = "authorization_denied"


class AuthorizationExpired(AuthorizationError):
    code = "authorization_expired"


class AuthorizationNotFound(AuthorizationError):
    """Unknown auth id, or the id belongs to another session."""

    code = "authorization_not_found"


class DuplicateAuthorization(AuthorizationError):
    """An authorization for the same (session, intent) is already outstanding."""

    code = "duplicate_authorization"


class ProbeFailure(JarvisError):
    """One discovery technique failed; the scan carries on without it."""

    code = "probe_failure"


class ScanInProgress(JarvisError):
    """A network scan is already running; the new request is rejected."""

    code = "scan_in_progress"


class DeviceNotFound(JarvisError):
    code = "device_not_found"


class SceneNotFound(JarvisError):
    code = "scene_not_found"
