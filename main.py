#!/usr/bin/env python3
"""PhaseBuild - phase-based web application generator.

Usage:
    python main.py build --prompt "a kanban board" --template templates/react.json
    python main.py build --prompt "..." --template t.json --blueprint bp.json --verbose
    python main.py build --prompt "..." --template t.json --dry-run     # blueprint only
    python main.py resume --session <session_id>
    python main.py sessions
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from agents.blueprint import BlueprintAgent
from core.events import EventSink, EventType, validate_payload
from core.orchestrator import Orchestrator
from core.persistence import SessionStore
from core.sandbox import SandboxClient
from core.state import blueprint_from_dict, template_from_dict

_QUIET_EVENTS = {EventType.FILE_CHUNK_GENERATED}


class PrintSink(EventSink):
    """Prints progress events to the terminal."""

    def __init__(self, verbose=False):
        self.verbose = verbose

    def emit(self, event_type, payload):
        validate_payload(event_type, payload)
        event_type = EventType(event_type)
        if event_type in _QUIET_EVENTS and not self.verbose:
            return
        if event_type == EventType.ERROR:
            print(f"  [ERROR] {payload['error']}")
        elif event_type == EventType.FILE_GENERATED:
            print(f"  + {payload['file']['file_path']}")
        elif "message" in payload and payload["message"]:
            print(f"[{event_type.value}] {payload['message']}")
        elif self.verbose:
            print(f"[{event_type.value}] {json.dumps(payload, default=str)[:200]}")


def _load_json(path):
    with open(path) as f:
        return json.load(f)


def _print_summary(state):
    print(f"\nSession:  {state.session_id}")
    print(f"State:    {state.dev_state.value}")
    print(f"Preview:  {state.preview_url or '-'}")
    print(f"Phases:")
    for p in state.generated_phases:
        print(f"  [{'x' if p.completed else ' '}] {p.name}")
    print(f"\nGenerated {len(state.generated_files)} file(s):")
    for path in sorted(state.generated_files):
        print(f"  {path}")


async def _run_session(orchestrator, initialize):
    try:
        if initialize:
            await orchestrator.initialize()
        await orchestrator.generate_all_files()
    finally:
        await orchestrator.close()
        await orchestrator.sandbox.close()


def cmd_build(args):
    """Plan a blueprint (unless given) and run a full generation session."""
    template = template_from_dict(_load_json(args.template))
    if args.blueprint:
        blueprint = blueprint_from_dict(_load_json(args.blueprint))
    else:
        blueprint = asyncio.run(BlueprintAgent().run(args.prompt, template))

    if args.dry_run:
        print(f"Title:      {blueprint.title}")
        print(f"Project:    {blueprint.project_name}")
        print(f"Frameworks: {', '.join(blueprint.frameworks) or '-'}")
        print("\nRoadmap:")
        for step in blueprint.implementation_roadmap:
            print(f"  {step}")
        if blueprint.initial_phase:
            print(f"\nInitial phase: {blueprint.initial_phase.name}")
            for f in blueprint.initial_phase.files:
                print(f"  {f.path}")
        return

    store = SessionStore(args.data_dir)
    state = Orchestrator.create_state(args.prompt, blueprint, template, hostname=args.hostname)
    orchestrator = Orchestrator(
        state,
        sandbox=SandboxClient(base_url=args.sandbox_url),
        sink=PrintSink(verbose=args.verbose),
        store=store,
    )
    asyncio.run(_run_session(orchestrator, initialize=True))
    _print_summary(orchestrator.state)
    print(f"\nSnapshot: {os.path.join(store.data_dir, state.session_id, 'files')}")


def cmd_resume(args):
    """Resume a stored session from its last snapshot."""
    store = SessionStore(args.data_dir)
    state = store.load_state(args.session)
    if state is None:
        print(f"No stored session {args.session}")
        sys.exit(1)
    orchestrator = Orchestrator(
        state,
        sandbox=SandboxClient(base_url=args.sandbox_url),
        sink=PrintSink(verbose=args.verbose),
        store=store,
    )
    asyncio.run(_run_session(orchestrator, initialize=False))
    _print_summary(orchestrator.state)


def cmd_sessions(args):
    store = SessionStore(args.data_dir)
    sessions = store.list_sessions()
    if not sessions:
        print("No stored sessions.")
        return
    for sid in sessions:
        state = store.load_state(sid)
        print(f"  {sid}  {state.dev_state.value:20s} {state.blueprint.title}")


def main():
    parser = argparse.ArgumentParser(
        prog="phasebuild",
        description="Phase-based web application generator",
    )
    parser.add_argument("--data-dir", help="Session store directory (default: ./sessions)")
    parser.add_argument("--sandbox-url", help="Sandbox service URL (default: $SANDBOX_SERVICE_URL)")
    parser.add_argument("--verbose", action="store_true", help="Show every event and debug logs")
    subparsers = parser.add_subparsers(dest="command")

    build_parser = subparsers.add_parser("build", help="Generate an application")
    build_parser.add_argument("--prompt", required=True, help="Natural language request")
    build_parser.add_argument("--template", required=True, help="Template details JSON file")
    build_parser.add_argument("--blueprint", help="Blueprint JSON file (skips blueprint generation)")
    build_parser.add_argument("--hostname", default="localhost:5000",
                              help="Host the sandbox webhook should call back (default: localhost:5000)")
    build_parser.add_argument("--dry-run", action="store_true",
                              help="Generate and print the blueprint only")

    resume_parser = subparsers.add_parser("resume", help="Resume a stored session")
    resume_parser.add_argument("--session", required=True, help="Session id")

    subparsers.add_parser("sessions", help="List stored sessions")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else os.environ.get("LOG_LEVEL", "WARNING"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "build":
        cmd_build(args)
    elif args.command == "resume":
        cmd_resume(args)
    elif args.command == "sessions":
        cmd_sessions(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
