"""JSON snapshot store for session state and completed builds."""

import json
import logging
import os
import time

from core.files import all_files
from core.state import CodeGenState
from utils.naming import check_containment

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "sessions")


class SessionStore:
    """Stores one directory per session under ``data_dir``:

        <session_id>/state.json        latest CodeGenState snapshot
        <session_id>/completion.json   terminal status and file list
        <session_id>/files/...         generated file snapshot
    """

    def __init__(self, data_dir=None):
        self.data_dir = data_dir or os.environ.get("PHASEBUILD_DATA_DIR") or DEFAULT_DATA_DIR

    def _session_dir(self, session_id):
        return check_containment(self.data_dir, session_id)

    def _write_json(self, path, data):
        tmp = path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)

    def save_state(self, state):
        session_dir = self._session_dir(state.session_id)
        os.makedirs(session_dir, exist_ok=True)
        self._write_json(os.path.join(session_dir, "state.json"), state.to_dict())

    def load_state(self, session_id):
        """Return the stored CodeGenState, or None if the session is unknown."""
        path = os.path.join(self._session_dir(session_id), "state.json")
        if not os.path.exists(path):
            return None
        with open(path) as f:
            return CodeGenState.from_dict(json.load(f))

    def record_completion(self, state, status="completed"):
        """Write the generated file snapshot and terminal status."""
        session_dir = self._session_dir(state.session_id)
        files_dir = os.path.join(session_dir, "files")
        os.makedirs(files_dir, exist_ok=True)

        written = []
        for f in all_files(state):
            try:
                resolved = check_containment(files_dir, f.file_path)
            except ValueError as e:
                logger.warning("Skipping snapshot of %s: %s", f.file_path, e)
                continue
            os.makedirs(os.path.dirname(resolved), exist_ok=True)
            with open(resolved, "w") as out:
                out.write(f.file_contents)
            written.append(f.file_path)

        self._write_json(os.path.join(session_dir, "completion.json"), {
            "session_id": state.session_id,
            "status": status,
            "completed_at": time.time(),
            "phases": [p.name for p in state.generated_phases if p.completed],
            "files": written,
            "preview_url": state.preview_url,
        })
        self.save_state(state)
        return files_dir

    def list_sessions(self):
        if not os.path.isdir(self.data_dir):
            return []
        return sorted(
            name for name in os.listdir(self.data_dir)
            if os.path.exists(os.path.join(self.data_dir, name, "state.json"))
        )
