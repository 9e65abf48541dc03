"""Command orchestrator.

Turns a transcript or structured tool request into a routed skill call::

    handle_input ─▶ IntentClassifier ─▶ dispatch ─▶ PolicyEngine
                                                     │
                          gated ◀────────────────────┤
                            │                        │ not gated
              AuthorizationManager.open              ▼
                            │                   _execute ─▶ invoke_skill
      submit_authorization ─┘──── authorized ───▶    │
                                                     ▼
                                       tool_result / tool_error + audit

Commands from one session are handled one at a time (per-session lock),
so that session's audit entries follow dispatch order.  Different
sessions never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from jarvis.errors import (
    AuthorizationError,
    AuthorizationExpired,
    CapabilityNotSupported,
    DuplicateAuthorization,
    JarvisError,
    SkillExecutionError,
    UnknownIntent,
)
from jarvis.events import Event, EventType, error_event
from jarvis.orchestrator.audit import AuditTrail
from jarvis.orchestrator.authorization import (
    AuthorizationManager,
    AuthorizationSession,
    AuthState,
)
from jarvis.orchestrator.intent import Intent, IntentClassifier
from jarvis.orchestrator.policy import Factor, PolicyEngine
from jarvis.sessions.registry import SessionRegistry
from jarvis.skills import SkillRegistry

logger = logging.getLogger(__name__)

SKILL_TIMEOUT = float(os.environ.get("JARVIS_SKILL_TIMEOUT", "30"))

UNKNOWN_INTENT_MESSAGE = "Sorry, I could not understand that command."


class Orchestrator:
    """Routes intents through policy and authorization to skills."""

    def __init__(
        self,
        sessions: SessionRegistry,
        skills: SkillRegistry,
        policy: PolicyEngine,
        authorizer: AuthorizationManager,
        audit: AuditTrail,
        classifier: IntentClassifier | None = None,
        skill_timeout: float = SKILL_TIMEOUT,
    ) -> None:
        self.sessions = sessions
        self.skills = skills
        self.policy = policy
        self.authorizer = authorizer
        self.audit = audit
        self.classifier = classifier or IntentClassifier()
        self.skill_timeout = skill_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()
        authorizer.add_listener(self)

    # ── Entry points ───────────────────────────────────────────────

    async def handle_input(self, session_id: str, raw_text: str) -> Intent:
        """Classify free text and dispatch it."""
        self.sessions.send(session_id, Event(EventType.TRANSCRIPT, {"text": raw_text, "isFinal": True}))
        intent = self.classifier.classify(raw_text)
        self.sessions.send(session_id, Event(EventType.INTENT, intent.to_dict()))
        if not intent.understood:
            logger.info("Unknown intent from %s: %r", session_id, raw_text)
            self.sessions.send(
                session_id, error_event(UNKNOWN_INTENT_MESSAGE, UnknownIntent.code, text=raw_text)
            )
            return intent
        await self.dispatch(session_id, intent)
        return intent

    async def handle_tool_request(
        self, session_id: str, tool_path: str, args: dict[str, Any], request_id: str | None = None
    ) -> Intent:
        """Dispatch an explicit ``"<tool>.<action>"`` request."""
        intent = Intent.from_tool_path(tool_path, args, request_id=request_id)
        if not intent.understood:
            self.sessions.send(
                session_id,
                Event(
                    EventType.TOOL_ERROR,
                    _with_request_id(
                        {
                            "tool": tool_path,
                            "error": "Tool must be of the form '<tool>.<action>'",
                            "code": UnknownIntent.code,
                        },
                        request_id,
                    ),
                ),
            )
            return intent
        await self.dispatch(session_id, intent)
        return intent

    async def dispatch(self, session_id: str, intent: Intent) -> None:
        """Gate *intent* through the policy engine, then execute or defer it."""
        async with self._lock_for(session_id):
            # the session may have closed while this intent waited on the lock
            if session_id not in self.sessions:
                logger.info("Dropping %s for closed session %s", intent.path, session_id)
                self.audit.record(
                    session_id, intent.tool, intent.action, intent.args, False,
                    {"error": "session closed"},
                )
                return
            decision = self.policy.classify(intent.tool or "", intent.action or "")
            if not decision.required:
                await self._execute(session_id, intent)
                return

            try:
                auth_id = self.authorizer.open(session_id, intent, decision.factors)
            except DuplicateAuthorization as exc:
                self.sessions.send(session_id, error_event(exc.message, exc.code))
                self.audit.record(
                    session_id, intent.tool, intent.action, intent.args, False,
                    {"error": exc.message, "code": exc.code},
                )
                return

            self.sessions.send(
                session_id,
                Event(
                    EventType.AUTHORIZATION_REQUIRED,
                    _with_request_id(
                        {
                            "authId": auth_id,
                            "tool": intent.tool,
                            "action": intent.action,
                            "args": intent.args,
                            "requiresPin": decision.requires_pin,
                            "requiresTotp": decision.requires_totp,
                            "maxAttempts": self.authorizer.max_attempts,
                            "timeout": int(self.authorizer.timeout * 1000),
                        },
                        intent.request_id,
                    ),
                ),
            )

    async def submit_authorization(
        self,
        session_id: str,
        auth_id: str,
        pin: str | None = None,
        totp: str | None = None,
    ) -> None:
        """Handle an ``authorization_response`` from *session_id*."""
        provided: dict[Factor, str] = {}
        if pin is not None:
            provided[Factor.PIN] = pin
        if totp is not None:
            provided[Factor.TOTP] = totp

        async with self._lock_for(session_id):
            try:
                outcome = await self.authorizer.submit(auth_id, provided, session_id=session_id)
            except AuthorizationExpired:
                # expiry listener has already notified and audited
                logger.info("Late authorization response for %s", auth_id)
                return
            except AuthorizationError as exc:
                self.sessions.send(session_id, error_event(exc.message, exc.code, authId=auth_id))
                return

            auth = outcome.session
            if outcome.authorized:
                self.sessions.send(
                    session_id,
                    Event(
                        EventType.AUTHORIZATION_SUCCESS,
                        {"authId": auth_id, "tool": auth.intent.tool, "action": auth.intent.action},
                    ),
                )
                await self._execute(session_id, auth.intent, authorization=_factor_label(auth))
            elif outcome.state is AuthState.DENIED:
                self.sessions.send(
                    session_id,
                    Event(
                        EventType.AUTHORIZATION_DENIED,
                        {
                            "authId": auth_id,
                            "message": "Maximum authorization attempts exceeded",
                            "remainingAttempts": 0,
                        },
                    ),
                )
                self.audit.record(
                    session_id, auth.intent.tool, auth.intent.action, auth.intent.args, False,
                    {"error": "authorization denied", "attempts": auth.attempts},
                    authorization=_factor_label(auth),
                )
            else:
                self.sessions.send(
                    session_id,
                    Event(
                        EventType.AUTHORIZATION_FAILED,
                        {
                            "authId": auth_id,
                            "remainingAttempts": outcome.remaining_attempts,
                            "failedFactors": sorted(f.value for f in outcome.failed_factors),
                        },
                    ),
                )

    async def invoke_skill(self, tool: str, action: str, args: dict[str, Any]) -> dict[str, Any]:
        """Run one skill action under the configured timeout.

        Hub errors (``SkillNotFound``, ``CapabilityNotSupported``,
        ``DeviceNotFound`` ...) propagate with their own code; anything else
        the skill raises or reports becomes :class:`SkillExecutionError`.  A
        timed-out call keeps running in the background and only its outcome
        is logged.
        """
        task: asyncio.Future | None = None
        try:
            skill = self.skills.get(tool)
            supports = getattr(skill, "supports", None)
            if supports is not None and not supports(action):
                raise CapabilityNotSupported(f"{tool} does not support '{action}'")
            task = asyncio.ensure_future(skill.execute(action, args))
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self.skill_timeout)
        except asyncio.TimeoutError:
            self._background.add(task)
            task.add_done_callback(self._late_result(tool, action))
            raise SkillExecutionError(
                f"{tool}.{action} timed out after {self.skill_timeout:.0f}s", tool=tool, action=action
            )
        except asyncio.CancelledError:
            if task is not None and not task.done():
                self._background.add(task)
                task.add_done_callback(self._late_result(tool, action))
            raise
        except JarvisError:
            raise
        except Exception as exc:
            logger.exception("Skill %s.%s raised", tool, action)
            raise SkillExecutionError(str(exc) or type(exc).__name__, tool=tool, action=action) from exc

        if not isinstance(result, dict):
            raise SkillExecutionError(
                f"{tool}.{action} returned {type(result).__name__}", tool=tool, action=action
            )
        if not result.get("ok", True):
            raise SkillExecutionError(
                str(result.get("error") or f"{tool}.{action} failed"),
                tool=tool,
                action=action,
                code=str(result["code"]) if result.get("code") else None,
            )
        return result

    # ── Listeners ──────────────────────────────────────────────────

    def authorization_expired(self, auth: AuthorizationSession) -> None:
        self.sessions.send(
            auth.session_id,
            Event(
                EventType.AUTHORIZATION_EXPIRED,
                {"authId": auth.id, "message": "Authorization request timed out"},
            ),
        )
        self.audit.record(
            auth.session_id, auth.intent.tool, auth.intent.action, auth.intent.args, False,
            {"error": "authorization expired"},
            authorization=_factor_label(auth),
        )

    def session_closed(self, session_id: str) -> None:
        for auth in self.authorizer.drop_session(session_id):
            self.audit.record(
                session_id, auth.intent.tool, auth.intent.action, auth.intent.args, False,
                {"error": "session closed before authorization"},
                authorization=_factor_label(auth),
            )
        self._locks.pop(session_id, None)

    # ── Internal ───────────────────────────────────────────────────

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    async def _execute(
        self, session_id: str, intent: Intent, authorization: str | None = None
    ) -> None:
        tool, action, args = intent.tool or "", intent.action or "", intent.args
        self.sessions.send(
            session_id,
            Event(
                EventType.TOOL_EXECUTING,
                _with_request_id({"tool": tool, "action": action, "args": args}, intent.request_id),
            ),
        )
        try:
            result = await self.invoke_skill(tool, action, args)
        except asyncio.CancelledError:
            self.audit.record(
                session_id, tool, action, args, False, {"error": "session closed"},
                authorization=authorization,
            )
            raise
        except Exception as exc:
            if not isinstance(exc, JarvisError):
                logger.exception("Unexpected failure invoking %s.%s", tool, action)
                exc = SkillExecutionError(str(exc) or type(exc).__name__, tool=tool, action=action)
            logger.warning("%s.%s failed for %s: %s", tool, action, session_id, exc.message)
            self.sessions.send(
                session_id,
                Event(
                    EventType.TOOL_ERROR,
                    _with_request_id(
                        {"tool": tool, "action": action, "error": exc.message, "code": exc.code},
                        intent.request_id,
                    ),
                ),
            )
            self.audit.record(
                session_id, tool, action, args, False,
                {"error": exc.message, "code": exc.code},
                authorization=authorization,
            )
            return

        self.sessions.send(
            session_id,
            Event(
                EventType.TOOL_RESULT,
                _with_request_id(
                    {"tool": tool, "action": action, "result": result}, intent.request_id
                ),
            ),
        )
        self.audit.record(session_id, tool, action, args, True, result, authorization=authorization)

    def _late_result(self, tool: str, action: str):
        def _done(task: asyncio.Task) -> None:
            self._background.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.warning("Timed-out call %s.%s later failed: %s", tool, action, exc)
            else:
                logger.info("Timed-out call %s.%s completed late", tool, action)

        return _done


def _with_request_id(data: dict[str, Any], request_id: str | None) -> dict[str, Any]:
    if request_id is not None:
        data["requestId"] = request_id
    return data


def _factor_label(auth: AuthorizationSession) -> str:
    return "+".join(sorted(f.value for f in auth.required_factors))
