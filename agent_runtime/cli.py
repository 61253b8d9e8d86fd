"""CLI entry point for the agent-session-runtime package."""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import sys
from typing import Any, List, Optional

from .config import get_settings

MIN_PYTHON = (3, 10)


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_help() -> None:
    print("Agent Runtime CLI")
    print()
    print("Usage:")
    print("  agent-runtime doctor                      Print environment diagnostics")
    print("  agent-runtime init-db                     Create tables and views")
    print("  agent-runtime load-agents <file>          Load agent records from YAML or JSON")
    print("  agent-runtime agents                      List stored agents")
    print("  agent-runtime run <agent_id> <input>      Run an agent")
    print("      [--session <id>] [--new-session] [--no-context] [--language python|javascript]")
    print("  agent-runtime sessions <agent_id>         List sessions for an agent")
    print("  agent-runtime hibernate <session_id>      Hibernate a session")
    print("  agent-runtime resume <session_id>         Resume a hibernated session")
    print("  agent-runtime stop <session_id>           Stop a session")
    print("  agent-runtime sweep                       Hibernate idle sessions once (for cron)")
    print()


def _print_doctor() -> None:
    from .storage.db import get_db_info

    settings = get_settings()
    info = get_db_info()
    print("Agent Runtime Doctor")
    print()
    print(f"Platform:   {platform.platform()}")
    print(f"Python:     {_python_version_str()}")
    print(f"Exe:        {sys.executable}")
    print(f"Database:   {info.dialect} ({info.db_path if info.dialect == 'sqlite' else 'DATABASE_URL'})")
    print(f"E2B key:    {'set' if settings.e2b_api_key else 'missing'}")
    print(f"OpenAI key: {'set' if settings.openai_api_key else 'missing'}")
    print(f"Claude key: {'set' if settings.anthropic_api_key else 'missing'}")
    print(f"Exa key:    {'set' if settings.exa_api_key else 'missing'}")
    print(f"Sandboxes:  one-shot {settings.sandbox_timeout_seconds}s, session {settings.session_sandbox_timeout_seconds}s")
    if settings.simulation_mode:
        print()
        print("Simulation mode: E2B_API_KEY is not set, agents run through the mock executor.")
        print("Add E2B_API_KEY to .env to enable real sandbox execution.")
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def _parse_input(raw: str) -> Any:
    """JSON when it parses, otherwise the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _pop_option(args: List[str], name: str) -> Optional[str]:
    if name not in args:
        return None
    idx = args.index(name)
    if idx + 1 >= len(args):
        print(f"Error: {name} requires a value", file=sys.stderr)
        sys.exit(2)
    value = args[idx + 1]
    del args[idx : idx + 2]
    return value


def _pop_flag(args: List[str], name: str) -> bool:
    if name in args:
        args.remove(name)
        return True
    return False


def _require(args: List[str], count: int, usage: str) -> None:
    if len(args) < count:
        print(f"Usage: agent-runtime {usage}", file=sys.stderr)
        sys.exit(2)


async def _run(args: List[str]) -> int:
    from .engine import run_agent
    from .session_manager import SessionManager

    session_id = _pop_option(args, "--session")
    language = _pop_option(args, "--language") or "python"
    new_session = _pop_flag(args, "--new-session")
    include_context = not _pop_flag(args, "--no-context")
    _require(args, 2, "run <agent_id> <input>")

    manager = SessionManager()
    try:
        envelope = await run_agent(
            args[0],
            _parse_input(args[1]),
            session_id=session_id,
            new_session=new_session,
            include_context=include_context,
            language=language,
            manager=manager,
        )
    finally:
        # Sessions stay open; the next run reconnects to their sandboxes.
        manager.detach()
    _print_json(envelope)
    return 0 if envelope["meta"]["success"] else 1


async def _session_command(command: str, session_id: str) -> int:
    from .session_manager import SessionManager

    manager = SessionManager()
    if command == "stop":
        session = await manager.stop_session(session_id)
    elif command == "hibernate":
        session = await manager.hibernate_session(session_id)
    else:
        session = await manager.resume_session(session_id)
        manager.detach()
    _print_json(session.model_dump(exclude={"conversation_context"}))
    return 0


async def _sweep() -> int:
    from .session_manager import SessionManager

    count = await SessionManager().check_idle_sessions()
    print(f"Hibernated {count} idle session(s)")
    return 0


def _dispatch(subcommand: str, args: List[str]) -> int:
    from .sandbox import SandboxError
    from .session_manager import SessionError
    from .storage import agent_store, session_store
    from .storage.db import PersistenceError

    try:
        if subcommand == "init-db":
            session_store.init_db()
            print(f"Database ready: {get_settings().db_path}")
            return 0
        if subcommand == "load-agents":
            _require(args, 1, "load-agents <file>")
            saved = agent_store.load_agents_file(args[0])
            print(f"Loaded {len(saved)} agent(s)")
            for record in saved:
                print(f"  {record['id']}  {record['name']}")
            return 0
        if subcommand == "agents":
            for record in agent_store.list_agents():
                print(f"{record['id']}  {record['name']}  ({record.get('execution_mode') or 'ephemeral'})")
            return 0
        if subcommand == "run":
            return asyncio.run(_run(args))
        if subcommand == "sessions":
            _require(args, 1, "sessions <agent_id>")
            for session in session_store.list_sessions(agent_id=args[0]):
                print(
                    f"{session.id}  {session.status.value:<10}  executions={session.execution_count}"
                    f"  messages={len(session.conversation_context)}  last_activity={session.last_activity_at}"
                )
            return 0
        if subcommand in {"stop", "hibernate", "resume"}:
            _require(args, 1, f"{subcommand} <session_id>")
            return asyncio.run(_session_command(subcommand, args[0]))
        if subcommand == "sweep":
            return asyncio.run(_sweep())
    except agent_store.AgentRecordInvalid as exc:
        print(f"Error: {exc}", file=sys.stderr)
        _print_json(exc.details)
        return 1
    except (SessionError, SandboxError, PersistenceError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Unknown command: {subcommand}", file=sys.stderr)
    _print_help()
    return 2


def main() -> None:
    """Run an agent-runtime subcommand."""
    _configure_logging()

    if len(sys.argv) < 2:
        _print_help()
        sys.exit(0)

    subcommand = sys.argv[1].strip().lower()
    if subcommand in {"-h", "--help", "help"}:
        _print_help()
        sys.exit(0)
    if subcommand == "doctor":
        _print_doctor()
        sys.exit(0)

    sys.exit(_dispatch(subcommand, list(sys.argv[2:])))


if __name__ == "__main__":
    main()
