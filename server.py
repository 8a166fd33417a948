#!/usr/bin/env python3
"""PhaseBuild - HTTP server for generation sessions and sandbox webhooks.

Flask handles requests on its own threads. All orchestrator work runs on one
background asyncio loop, so session state is only ever touched from that
loop's thread.
"""

import asyncio
import logging
import os
import threading
import time

from flask import Flask, jsonify, request

from agents.blueprint import BlueprintAgent
from core.events import EventBroadcaster
from core.orchestrator import Orchestrator
from core.persistence import SessionStore
from core.state import blueprint_from_dict, template_from_dict

logger = logging.getLogger(__name__)

app = Flask(__name__)
store = SessionStore()

# Live sessions keyed by session_id: {id: {"orchestrator": ..., "events": ..., "created": timestamp}}
_sessions = {}
_sessions_lock = threading.Lock()
_MAX_SESSIONS = 50
_REQUEST_TIMEOUT = 120
_MAX_EVENT_WAIT = 30

_loop = None
_loop_lock = threading.Lock()


def _get_loop():
    """Return the background event loop, starting its thread on first use."""
    global _loop
    with _loop_lock:
        if _loop is None:
            _loop = asyncio.new_event_loop()
            threading.Thread(target=_loop.run_forever, name="phasebuild-loop", daemon=True).start()
    return _loop


def _run(coro, wait=True):
    future = asyncio.run_coroutine_threadsafe(coro, _get_loop())
    if wait:
        return future.result(timeout=_REQUEST_TIMEOUT)
    return future


async def _call(fn, *args):
    return fn(*args)


async def _wait_for_events(events, since, wait):
    """Return events after ``since``, waiting up to ``wait`` seconds for the next one."""
    pending = events.events_since(since)
    if pending or wait <= 0:
        return pending
    queue = events.subscribe()
    try:
        await asyncio.wait_for(queue.get(), wait)
    except asyncio.TimeoutError:
        pass
    finally:
        events.unsubscribe(queue)
    return events.events_since(since)


def _cleanup_sessions():
    """Drop the oldest idle sessions past the limit. Called under _sessions_lock."""
    if len(_sessions) <= _MAX_SESSIONS:
        return
    idle = sorted(
        (s for s in _sessions.items() if not s[1]["orchestrator"].is_generating),
        key=lambda x: x[1]["created"],
    )
    for sid, session in idle[:len(_sessions) - _MAX_SESSIONS]:
        del _sessions[sid]
        logger.info("Evicting session %s", sid)
        _run(session["orchestrator"].close(), wait=False)


def _register(orchestrator, events):
    with _sessions_lock:
        _sessions[orchestrator.state.session_id] = {
            "orchestrator": orchestrator,
            "events": events,
            "created": time.time(),
        }
        _cleanup_sessions()


def _build_orchestrator(state):
    events = EventBroadcaster()
    orchestrator = Orchestrator(state, sink=events, store=store)
    _register(orchestrator, events)
    return orchestrator


def _get_session(session_id):
    """Return the live session, resuming it from the store if needed."""
    with _sessions_lock:
        session = _sessions.get(session_id)
    if session:
        return session
    try:
        state = store.load_state(session_id)
    except ValueError:
        return None
    if state is None:
        return None
    _build_orchestrator(state)
    with _sessions_lock:
        return _sessions.get(session_id)


async def _start(orchestrator):
    await orchestrator.initialize()
    await orchestrator.generate_all_files()


def _launch(orchestrator):
    """Schedule setup and generation in the background."""
    return _run(_start(orchestrator), wait=False)


def _state_to_dict(orchestrator):
    """Serialize session state to a JSON-safe summary."""
    state = orchestrator.state
    return {
        "session_id": state.session_id,
        "query": state.query,
        "title": state.blueprint.title,
        "dev_state": state.dev_state.value,
        "phases": [
            {"name": p.name, "description": p.description, "completed": p.completed,
             "files": [f.path for f in p.files]}
            for p in state.generated_phases
        ],
        "files": sorted(state.generated_files),
        "commands_history": list(state.commands_history),
        "pending_user_inputs": len(state.pending_user_inputs),
        "preview_url": state.preview_url,
        "progress": orchestrator.get_progress(),
    }


@app.route("/api/sessions", methods=["POST"])
def api_create_session():
    data = request.get_json(silent=True)
    if not data or not data.get("query", "").strip():
        return jsonify({"error": "Missing query"}), 400
    if not isinstance(data.get("template"), dict) or not data["template"].get("name"):
        return jsonify({"error": "Missing template"}), 400

    query = data["query"].strip()
    template = template_from_dict(data["template"])
    if data.get("blueprint"):
        blueprint = blueprint_from_dict(data["blueprint"])
    else:
        try:
            blueprint = _run(BlueprintAgent().run(query, template))
        except Exception as e:
            logger.exception("Blueprint generation failed")
            return jsonify({"error": f"Blueprint generation failed: {e}"}), 500

    hostname = data.get("hostname") or request.host
    state = Orchestrator.create_state(query, blueprint, template, hostname=hostname)
    orchestrator = _build_orchestrator(state)
    _launch(orchestrator)
    return jsonify({"session_id": state.session_id}), 201


@app.route("/api/sessions/<session_id>")
def api_get_session(session_id):
    session = _get_session(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    return jsonify(_state_to_dict(session["orchestrator"]))


@app.route("/api/sessions/<session_id>/events")
def api_events(session_id):
    session = _get_session(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    try:
        since = int(request.args.get("since", 0))
        wait = min(float(request.args.get("wait", 0)), _MAX_EVENT_WAIT)
    except ValueError:
        return jsonify({"error": "since and wait must be numbers"}), 400
    events = _run(_wait_for_events(session["events"], since, wait))
    return jsonify({"events": events})


@app.route("/api/sessions/<session_id>/messages", methods=["POST"])
def api_message(session_id):
    session = _get_session(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    data = request.get_json(silent=True)
    if not data or not data.get("message", "").strip():
        return jsonify({"error": "Missing message"}), 400
    reply = _run(session["orchestrator"].handle_user_input(data["message"].strip()))
    if reply is None:
        return jsonify({"error": "Message could not be processed"}), 500
    return jsonify({"reply": reply})


@app.route("/api/sessions/<session_id>/client-errors", methods=["POST"])
def api_client_errors(session_id):
    session = _get_session(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    data = request.get_json(silent=True)
    errors = data.get("errors") if isinstance(data, dict) else None
    if not isinstance(errors, list) or not errors:
        return jsonify({"error": "Missing errors"}), 400
    _run(_call(session["orchestrator"].add_client_errors, errors))
    return jsonify({"accepted": len(errors)})


@app.route("/api/sessions/<session_id>/generate", methods=["POST"])
def api_generate(session_id):
    session = _get_session(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    orchestrator = session["orchestrator"]
    if orchestrator.is_generating:
        return jsonify({"status": "already_generating"}), 409
    _run(orchestrator.generate_all_files(), wait=False)
    return jsonify({"status": "started"}), 202


@app.route("/api/webhook/sandbox/<session_id>/<event_type>", methods=["POST"])
def api_sandbox_webhook(session_id, event_type):
    session = _get_session(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    payload = request.get_json(silent=True)
    try:
        handled = _run(_call(session["orchestrator"].handle_webhook, event_type, payload))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.exception("Webhook handling failed for %s", session_id)
        return jsonify({"error": str(e)}), 500
    return jsonify({"success": True, "handled": handled})


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", 5000))
    print(f"PhaseBuild server running at http://localhost:{port}")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
