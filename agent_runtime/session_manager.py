"""
Session lifecycle: maps a durable conversation session onto a live sandbox.

States are active, idle, hibernated, stopped and error. The durable record in
agent_sessions is the source of truth; this process only caches the live
sandbox handle and the idle timer for each session, and rebuilds either one
from the record when it is missing (reconnect, then recreate).

Interpreter state does not survive hibernation. Only the conversation
transcript is carried over to the new sandbox.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .agent_config import parse_execution_mode, parse_session_config, resolve
from .config import get_settings
from .models import (
    AgentConfig,
    ConversationMessage,
    ExecutionMode,
    ExecutionResult,
    Session,
    SessionConfig,
    SessionStatus,
    utc_now_iso,
)
from .providers import environment_for, packages_for
from .sandbox import (
    BaseSandboxGateway,
    ProvisioningError,
    ReconnectError,
    SandboxCommunicationError,
    SandboxError,
    SandboxHandle,
    build_gateway,
)
from .storage import agent_store, session_store
from .storage.activity_log import log_activity
from .storage.db import PersistenceError

logger = logging.getLogger("agent-runtime")


class SessionError(RuntimeError):
    """Base class for session lookup and state errors."""


class SessionNotFound(SessionError):
    pass


class SessionStopped(SessionError):
    """The session was stopped explicitly and cannot run again."""


class AgentNotFound(SessionError):
    pass


def trim_context(messages: Sequence[ConversationMessage], max_messages: int) -> List[ConversationMessage]:
    """Drop the oldest messages so at most `max_messages` remain."""
    messages = list(messages)
    if max_messages > 0 and len(messages) > max_messages:
        return messages[-max_messages:]
    return messages


def _output_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


class SessionManager:
    """
    Owns the in-process session caches. One instance per process.

    Operations on a single session are serialised with a per-session lock, so
    two concurrent executes cannot lose each other's context update.
    """

    def __init__(self, gateway: Optional[BaseSandboxGateway] = None) -> None:
        self.gateway = gateway if gateway is not None else build_gateway()
        self._sandboxes: Dict[str, SandboxHandle] = {}
        self._idle_timers: Dict[str, asyncio.TimerHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # -- agent lookups --------------------------------------------------

    @staticmethod
    def _agent_record(agent: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
        if isinstance(agent, Mapping):
            if not agent.get("id"):
                raise AgentNotFound("Agent record has no id")
            return dict(agent)
        record = agent_store.get_agent(agent)
        if record is None:
            raise AgentNotFound(f"Agent {agent} not found")
        return record

    def _agent_for(self, session: Session) -> Tuple[AgentConfig, SessionConfig]:
        record = self._agent_record(session.agent_id)
        return resolve(record), parse_session_config(record.get("session_config"))

    # -- sandbox plumbing -----------------------------------------------

    async def _provision(self, handle: SandboxHandle, config: AgentConfig, context: Sequence[ConversationMessage]) -> None:
        """Env vars and packages for the agent's model, then load config and transcript."""
        if not await self.gateway.set_environment_variables(handle, environment_for(config.model)):
            logger.warning("set_environment_variables failed sandbox_id=%s", handle.sandbox_id)
        if not await self.gateway.install_packages(handle, packages_for(config.model)):
            logger.warning("install_packages failed sandbox_id=%s", handle.sandbox_id)
        result = await self.gateway.initialize_agent(handle, config, context)
        if not result.success:
            logger.warning("initialize_agent failed sandbox_id=%s error=%s", handle.sandbox_id, result.error)

    async def _open_sandbox(
        self,
        session_id: str,
        config: AgentConfig,
        context: Sequence[ConversationMessage],
    ) -> SandboxHandle:
        """Create and provision a fresh sandbox; raises ProvisioningError."""
        handle = await self.gateway.create_sandbox(
            session_id,
            timeout_seconds=get_settings().session_sandbox_timeout_seconds,
            metadata={"agent_id": config.id, "session_id": session_id, "mode": "persistent"},
        )
        try:
            await self._provision(handle, config, context)
        except SandboxError as exc:
            await self.gateway.kill_sandbox(handle)
            raise ProvisioningError(f"Failed to provision sandbox {handle.sandbox_id}: {exc}") from exc
        return handle

    async def _release_sandbox(self, session_id: str, sandbox_id: Optional[str]) -> None:
        """Cancel the timer and terminate the sandbox, cached or not."""
        self._cancel_idle_timer(session_id)
        handle = self._sandboxes.pop(session_id, None)
        if handle is not None:
            await self.gateway.kill_sandbox(handle)
        elif sandbox_id:
            await self.gateway.kill_sandbox_by_id(sandbox_id)

    async def _ensure_handle(self, session: Session, config: AgentConfig) -> SandboxHandle:
        """Live handle for the session: memory cache, then reconnect, then recreate."""
        handle = self._sandboxes.get(session.id)
        if handle is not None:
            return handle

        context = session.conversation_context
        if session.sandbox_id:
            try:
                handle = await self.gateway.connect_sandbox(session.sandbox_id, owner_id=session.id)
                await self._provision(handle, config, context)
            except (ReconnectError, SandboxCommunicationError) as exc:
                logger.info("reconnect_failed session_id=%s sandbox_id=%s: %s", session.id, session.sandbox_id, exc)
                if handle is not None:
                    await self.gateway.kill_sandbox(handle)
                    handle = None
            else:
                self._sandboxes[session.id] = handle
                logger.info("reconnected session_id=%s sandbox_id=%s", session.id, handle.sandbox_id)
                return handle

        try:
            handle = await self._open_sandbox(session.id, config, context)
        except ProvisioningError:
            self._mark_error(session.id)
            raise
        self._sandboxes[session.id] = handle
        session_store.update_session(session.id, status=SessionStatus.ACTIVE, sandbox_id=handle.sandbox_id)
        log_activity(session.id, "resumed", output={"sandbox_id": handle.sandbox_id, "reason": "recreated"})
        logger.info("recreated session_id=%s sandbox_id=%s", session.id, handle.sandbox_id)
        return handle

    def _mark_error(self, session_id: str) -> None:
        try:
            session_store.update_session(session_id, status=SessionStatus.ERROR, sandbox_id=None)
        except PersistenceError as exc:
            logger.warning("mark_error failed session_id=%s: %s", session_id, exc)

    # -- idle timers ----------------------------------------------------

    def _cancel_idle_timer(self, session_id: str) -> None:
        timer = self._idle_timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    def reset_idle_timer(self, session_id: str, policy: Optional[SessionConfig] = None) -> None:
        """Replace the session's pending idle timer; at most one is ever outstanding."""
        policy = policy or SessionConfig()
        self._cancel_idle_timer(session_id)
        loop = asyncio.get_running_loop()
        self._idle_timers[session_id] = loop.call_later(
            policy.idle_timeout_minutes * 60.0,
            self._idle_timer_fired,
            session_id,
            policy.auto_hibernate,
        )

    def _idle_timer_fired(self, session_id: str, auto_hibernate: bool) -> None:
        self._idle_timers.pop(session_id, None)
        task = asyncio.ensure_future(self._on_idle_timeout(session_id, auto_hibernate))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_idle_timeout(self, session_id: str, auto_hibernate: bool) -> None:
        try:
            async with self._lock(session_id):
                # Activity while waiting for the lock scheduled a fresh timer.
                if session_id in self._idle_timers:
                    return
                if auto_hibernate:
                    await self._hibernate(session_id)
                    return
                session = session_store.get_session(session_id)
                if session is not None and session.status == SessionStatus.ACTIVE:
                    session_store.update_session(session_id, status=SessionStatus.IDLE)
                    logger.info("idle session_id=%s", session_id)
        except Exception as exc:
            logger.warning("idle timeout handling failed session_id=%s: %s", session_id, exc)

    # -- public operations ------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        return session_store.get_session(session_id)

    async def get_or_create_session(
        self,
        agent: Union[str, Mapping[str, Any]],
        create_new: bool = False,
    ) -> Optional[Session]:
        """
        Session to run the agent in, or None for ephemeral agents.

        Ephemeral agents never get a session record. Otherwise the most
        recently active open session is reused (hibernated ones are resumed)
        unless `create_new` is set.
        """
        record = self._agent_record(agent)
        if parse_execution_mode(record.get("execution_mode")) == ExecutionMode.EPHEMERAL:
            return None

        if not create_new:
            existing = session_store.find_open_session(record["id"])
            if existing is not None:
                if existing.status == SessionStatus.HIBERNATED:
                    return await self.resume_session(existing)
                return existing
        return await self.create_session(record)

    async def create_session(self, agent: Union[str, Mapping[str, Any]]) -> Session:
        record = self._agent_record(agent)
        config = resolve(record)
        policy = parse_session_config(record.get("session_config"))
        mode = parse_execution_mode(record.get("execution_mode"))
        session_id = str(uuid.uuid4())
        start = time.monotonic()

        handle = await self._open_sandbox(session_id, config, [])
        try:
            session = session_store.create_session(
                config.id,
                session_id=session_id,
                sandbox_id=handle.sandbox_id,
                metadata={
                    "agent_name": config.name,
                    "execution_mode": mode.value,
                    "simulated": self.gateway.simulated,
                },
            )
        except PersistenceError:
            await self.gateway.kill_sandbox(handle)
            raise

        self._sandboxes[session.id] = handle
        self.reset_idle_timer(session.id, policy)
        latency_ms = (time.monotonic() - start) * 1000.0
        log_activity(session.id, "started", output={"sandbox_id": handle.sandbox_id}, duration_ms=latency_ms)
        logger.info(
            "session_created session_id=%s agent_id=%s sandbox_id=%s latency_ms=%.1f",
            session.id,
            config.id,
            handle.sandbox_id,
            latency_ms,
        )
        return session

    async def execute_in_session(
        self,
        session_id: str,
        input_text: str,
        include_context: bool = True,
    ) -> ExecutionResult:
        """
        Run one input through the session's agent.

        Only a successful run with context enabled appends the user/assistant
        pair to the transcript. The activity log is written either way.
        """
        async with self._lock(session_id):
            return await self._execute(session_id, input_text, include_context)

    async def _execute(self, session_id: str, input_text: str, include_context: bool) -> ExecutionResult:
        start = time.monotonic()
        session = session_store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.status == SessionStatus.STOPPED:
            raise SessionStopped(f"Session {session_id} is stopped")
        config, policy = self._agent_for(session)

        # 1) Live handle: memory, reconnect, recreate.
        handle = await self._ensure_handle(session, config)

        # 2) Any execution counts as activity.
        self.reset_idle_timer(session_id, policy)

        # 3-4) Contextual payload through the gateway.
        context = session.conversation_context if include_context else []
        try:
            result = await self.gateway.execute_in_sandbox(handle, config, input_text, context)
        except SandboxCommunicationError as exc:
            # Drop the stale handle; the next call reconnects or recreates.
            self._sandboxes.pop(session_id, None)
            result = ExecutionResult(success=False, error=str(exc))
        latency_ms = (time.monotonic() - start) * 1000.0
        if result.execution_time is None:
            result.execution_time = latency_ms

        # 5) Transcript only grows on success with context.
        values: Dict[str, Any] = {"last_activity_at": utc_now_iso(), "status": SessionStatus.ACTIVE}
        if result.success and include_context and policy.preserve_context:
            messages = [
                *session.conversation_context,
                ConversationMessage(role="user", content=input_text),
                ConversationMessage(role="assistant", content=_output_text(result.output)),
            ]
            values["conversation_context"] = trim_context(messages, policy.max_context_messages)
            values["execution_count"] = session.execution_count + 1
        try:
            session_store.update_session(session_id, **values)
        except PersistenceError as exc:
            logger.warning("context update failed session_id=%s: %s", session_id, exc)

        # 6) Always audited.
        log_activity(
            session_id,
            "execution",
            input=input_text,
            output={"success": result.success, "output": result.output, "error": result.error},
            duration_ms=latency_ms,
        )
        logger.info(
            "execute session_id=%s success=%s include_context=%s latency_ms=%.1f",
            session_id,
            result.success,
            include_context,
            latency_ms,
        )
        return result

    async def hibernate_session(self, session_id: str) -> Session:
        async with self._lock(session_id):
            return await self._hibernate(session_id)

    async def _hibernate(self, session_id: str) -> Session:
        session = session_store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.status in (SessionStatus.HIBERNATED, SessionStatus.STOPPED):
            self._cancel_idle_timer(session_id)
            return session

        await self._release_sandbox(session_id, session.sandbox_id)
        now = utc_now_iso()
        session_store.update_session(session_id, status=SessionStatus.HIBERNATED, hibernated_at=now, sandbox_id=None)
        log_activity(
            session_id,
            "hibernated",
            output={"sandbox_id": session.sandbox_id, "context_messages": len(session.conversation_context)},
        )
        logger.info("hibernated session_id=%s sandbox_id=%s", session_id, session.sandbox_id)
        return session.model_copy(
            update={"status": SessionStatus.HIBERNATED, "hibernated_at": now, "sandbox_id": None}
        )

    async def resume_session(self, session: Union[str, Session]) -> Session:
        """Bring a session back on a new sandbox seeded with its stored transcript."""
        session_id = session.id if isinstance(session, Session) else session
        async with self._lock(session_id):
            return await self._resume(session_id)

    async def _resume(self, session_id: str) -> Session:
        start = time.monotonic()
        session = session_store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.status == SessionStatus.STOPPED:
            raise SessionStopped(f"Session {session_id} is stopped")
        if session.status == SessionStatus.ACTIVE and session_id in self._sandboxes:
            return session
        config, policy = self._agent_for(session)

        await self._release_sandbox(session_id, session.sandbox_id)
        try:
            handle = await self._open_sandbox(session_id, config, session.conversation_context)
        except ProvisioningError:
            self._mark_error(session_id)
            raise
        self._sandboxes[session_id] = handle

        now = utc_now_iso()
        session_store.update_session(
            session_id, status=SessionStatus.ACTIVE, sandbox_id=handle.sandbox_id, last_activity_at=now
        )
        self.reset_idle_timer(session_id, policy)
        latency_ms = (time.monotonic() - start) * 1000.0
        log_activity(
            session_id,
            "resumed",
            output={"sandbox_id": handle.sandbox_id, "context_messages": len(session.conversation_context)},
            duration_ms=latency_ms,
        )
        logger.info("resumed session_id=%s sandbox_id=%s latency_ms=%.1f", session_id, handle.sandbox_id, latency_ms)
        return session.model_copy(
            update={"status": SessionStatus.ACTIVE, "sandbox_id": handle.sandbox_id, "last_activity_at": now}
        )

    async def stop_session(self, session_id: str) -> Session:
        try:
            async with self._lock(session_id):
                return await self._stop(session_id)
        finally:
            # A stopped session never runs again, so its lock is not needed.
            self._locks.pop(session_id, None)

    async def _stop(self, session_id: str) -> Session:
        session = session_store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.status == SessionStatus.STOPPED:
            return session

        await self._release_sandbox(session_id, session.sandbox_id)
        now = utc_now_iso()
        session_store.update_session(session_id, status=SessionStatus.STOPPED, stopped_at=now, sandbox_id=None)
        log_activity(session_id, "stopped", output={"execution_count": session.execution_count})
        logger.info("stopped session_id=%s executions=%d", session_id, session.execution_count)
        return session.model_copy(update={"status": SessionStatus.STOPPED, "stopped_at": now, "sandbox_id": None})

    async def check_idle_sessions(self) -> int:
        """Hibernate every session the durable store says has been idle too long."""
        hibernated = 0
        for row in session_store.list_sessions_to_hibernate():
            try:
                await self.hibernate_session(row["id"])
            except (SessionError, PersistenceError) as exc:
                logger.warning("sweep hibernate failed session_id=%s: %s", row["id"], exc)
                continue
            hibernated += 1
        if hibernated:
            logger.info("sweep hibernated=%d", hibernated)
        return hibernated

    def get_active_sessions(self) -> List[Session]:
        return session_store.list_sessions(statuses=[SessionStatus.ACTIVE, SessionStatus.IDLE])

    def list_agent_sessions(self, agent_id: str) -> List[Session]:
        return session_store.list_sessions(agent_id=agent_id)

    async def stop_agent_sessions(self, agent_id: str) -> int:
        sessions = session_store.list_sessions(
            agent_id=agent_id,
            statuses=[SessionStatus.ACTIVE, SessionStatus.IDLE, SessionStatus.HIBERNATED, SessionStatus.ERROR],
        )
        for session in sessions:
            await self.stop_session(session.id)
        return len(sessions)

    def detach(self) -> None:
        """Forget cached handles and timers without touching sessions or sandboxes."""
        for session_id in list(self._idle_timers):
            self._cancel_idle_timer(session_id)
        self._sandboxes.clear()

    async def shutdown(self) -> None:
        """Stop every session this process holds a sandbox or timer for."""
        for session_id in set(self._sandboxes) | set(self._idle_timers):
            try:
                await self.stop_session(session_id)
            except (SessionError, PersistenceError) as exc:
                logger.warning("shutdown stop failed session_id=%s: %s", session_id, exc)
        for session_id in list(self._idle_timers):
            self._cancel_idle_timer(session_id)
        for task in list(self._background):
            task.cancel()
        await self.gateway.close_all_sandboxes()
