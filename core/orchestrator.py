"""Main generation orchestrator: phase-based state machine.

One Orchestrator owns one session. It is the only component that changes
session state: every change replaces ``self.state`` with a new CodeGenState
and persists it, so a session can be resumed from any snapshot.

    PHASE_GENERATING -> PHASE_IMPLEMENTING -> PHASE_GENERATING ... (last phase)
        -> FINALIZING -> REVIEWING -> IDLE

Pending user input diverts REVIEWING back to PHASE_GENERATING.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, replace

from agents.code_fixer import RealtimeCodeFixer
from agents.conversation import ConversationProcessor
from agents.deterministic_fixer import fix_project_issues
from agents.generator import PhaseGeneratorAgent, PhaseStreamError
from agents.planner import PhasePlannerAgent
from agents.project_setup import ProjectSetupAssistant
from agents.regenerator import FileRegenerationOperation
from agents.reviewer import ReviewerAgent
from config.defaults import DEFAULTS
from config.rules import EXTERNAL_PACKAGE_RE, PACKAGE_MANAGER, clean_command, looks_like_command
from core.deployment import DeploymentController
from core.events import EventType, NullSink
from core.files import all_files, get_file
from core.issues import IssueAggregator
from core.sandbox import SandboxClient
from core.state import CodeGenState, DevState, PhaseConcept

logger = logging.getLogger(__name__)

FINALIZATION_PHASE = DEFAULTS["finalization_phase_name"]
LAST_PHASE_DESCRIPTION = (
    "Final pass over the whole application: fix remaining bugs and runtime errors, "
    "make sure every planned feature is wired up, and polish the UI. "
    "Do not add new features."
)


def _package_name(module):
    parts = module.split("/")
    return "/".join(parts[:2]) if module.startswith("@") else parts[0]


def _file_summary(f):
    return {"file_path": f.file_path, "file_purpose": f.file_purpose, "size": len(f.file_contents)}


class Orchestrator:
    """Drives one generation session through the phase state machine.

    Collaborators default to the real implementations. Tests pass mocks.
    """

    def __init__(self, state, sandbox=None, sink=None, store=None, planner=None, generator=None,
                 fixer=None, regenerator=None, reviewer=None, setup=None, conversation=None):
        self.state = state
        self.sink = sink or NullSink()
        self.store = store
        self._owns_sandbox = sandbox is None
        self.sandbox = sandbox or SandboxClient()
        self.fixer = fixer or RealtimeCodeFixer()
        self.planner = planner or PhasePlannerAgent()
        self.generator = generator or PhaseGeneratorAgent(self.fixer)
        self.regenerator = regenerator or FileRegenerationOperation()
        self.reviewer = reviewer or ReviewerAgent()
        self.setup = setup or ProjectSetupAssistant()
        self.conversation = conversation or ConversationProcessor()

        self.deployment = DeploymentController(self.sandbox, self._get_state, self._update_instance, self.sink)
        self.issues = IssueAggregator(self.sandbox, self.deployment, self._get_state,
                                      self._clear_client_errors, self.sink)
        self.is_generating = False
        self._generation_task = None
        self._persist_task = None
        self._unsaved = None

    @staticmethod
    def create_state(query, blueprint, template, hostname="localhost", session_id=None):
        """Create initial session state."""
        return CodeGenState(
            session_id=session_id or uuid.uuid4().hex,
            query=query,
            blueprint=blueprint,
            template=template,
            hostname=hostname,
        )

    # -- state ownership --------------------------------------------------------

    def _get_state(self):
        return self.state

    def _commit(self, new_state):
        self.state = new_state
        if self.store is None:
            return
        self._unsaved = new_state
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save(self._take_unsaved())
            return
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = loop.create_task(self._persist())

    def _take_unsaved(self):
        state, self._unsaved = self._unsaved, None
        return state

    def _save(self, state):
        try:
            self.store.save_state(state)
        except OSError:
            logger.exception("Failed to persist session %s", state.session_id)

    async def _persist(self):
        """Write snapshots off the loop thread, newest only, in commit order."""
        loop = asyncio.get_running_loop()
        while self._unsaved is not None:
            await loop.run_in_executor(None, self._save, self._take_unsaved())

    async def flush_state(self):
        if self._persist_task is not None:
            await self._persist_task

    def _update(self, **changes):
        self._commit(self.state.evolve(**changes))

    def _update_instance(self, instance_id, preview_url, tunnel_url):
        self._update(sandbox_instance_id=instance_id, preview_url=preview_url, tunnel_url=tunnel_url)

    def _clear_client_errors(self):
        self._update(client_reported_errors=())

    def _emit_error(self, message):
        self.sink.emit(EventType.ERROR, {"error": message})

    # -- setup ------------------------------------------------------------------

    async def initialize(self):
        """Deploy the template while setup commands are generated, then run them."""
        deploy_task = asyncio.ensure_future(self.deploy_to_sandbox())
        try:
            commands = await self.setup.generate_setup_commands(self.state)
        except Exception as e:
            self._emit_error(f"Setup command generation failed: {e}")
            commands = []
        await deploy_task
        if commands:
            await self.execute_commands(commands)

    async def deploy_to_sandbox(self, files=None, redeploy=False):
        return await self.deployment.deploy(files=files, redeploy=redeploy)

    # -- main loop --------------------------------------------------------------

    def _has_finalized(self):
        return any(p.name == FINALIZATION_PHASE for p in self.state.generated_phases)

    def _initial_dev_state(self):
        phases = self.state.generated_phases
        incomplete = [p for p in phases if not p.completed]
        if incomplete:
            latest = incomplete[-1]
            self._update(current_phase=PhaseConcept(
                name=latest.name,
                description=latest.description,
                files=latest.files,
                last_phase=latest.last_phase,
                install_commands=latest.install_commands,
            ))
            return DevState.PHASE_IMPLEMENTING
        if phases or self.state.blueprint.initial_phase is None:
            return DevState.PHASE_GENERATING

        initial = self.state.blueprint.initial_phase
        self._commit(self.state.with_phase(initial).evolve(current_phase=initial))
        return DevState.PHASE_IMPLEMENTING

    async def generate_all_files(self, review_cycles=None):
        """Run the state machine until IDLE. A second concurrent call is a no-op."""
        if self.is_generating:
            logger.info("Generation already in progress for %s", self.state.session_id)
            return
        finalized = any(p.name == FINALIZATION_PHASE and p.completed for p in self.state.generated_phases)
        if finalized and not self.state.pending_user_inputs:
            logger.info("Session %s is already finalized; nothing to generate", self.state.session_id)
            return

        self.is_generating = True
        try:
            self.sink.emit(EventType.GENERATION_STARTED, {
                "message": "Starting code generation",
                "total_files": self.get_total_files(),
            })
            current = self._initial_dev_state()
            static_analysis = None
            self._update(dev_state=current)

            while current != DevState.IDLE:
                logger.info("Session %s: %s", self.state.session_id, current.value)
                try:
                    if current == DevState.PHASE_GENERATING:
                        current = await self.execute_phase_generation()
                    elif current == DevState.PHASE_IMPLEMENTING:
                        current, static_analysis = await self.execute_phase_implementation(static_analysis)
                    elif current == DevState.REVIEWING:
                        current = await self.execute_review_cycle(review_cycles)
                    elif current == DevState.FINALIZING:
                        current = await self.execute_finalizing()
                except Exception as e:
                    logger.exception("State %s failed", current.value)
                    self._emit_error(f"Error during {current.value}: {e}")
                    current = DevState.IDLE
                self._update(dev_state=current)
        finally:
            self.is_generating = False
            self.sink.emit(EventType.GENERATION_COMPLETE, {"message": "Code generation complete"})
            if self.store is not None:
                await self.flush_state()
                try:
                    self.store.record_completion(self.state)
                except OSError:
                    logger.exception("Failed to record completion for %s", self.state.session_id)

    # -- state handlers ---------------------------------------------------------

    async def execute_phase_generation(self):
        self.sink.emit(EventType.PHASE_GENERATING, {"message": "Planning next phase"})
        try:
            issues = await self.issues.fetch_all()
            suggestions = list(self.state.pending_user_inputs)
            phase = await self.generate_next_phase(issues, suggestions)
        except Exception as e:
            logger.exception("Phase generation failed")
            self._emit_error(f"Phase generation failed: {e}")
            return DevState.IDLE

        if not phase.files:
            logger.info("Planner returned no files; finalizing")
            self._update(pending_user_inputs=self.state.pending_user_inputs[len(suggestions):])
            return DevState.FINALIZING

        # input queued while the planner ran stays pending for the next phase
        remaining = self.state.pending_user_inputs[len(suggestions):]
        self._commit(self.state.with_phase(phase).evolve(current_phase=phase, pending_user_inputs=remaining))
        return DevState.PHASE_IMPLEMENTING

    async def generate_next_phase(self, issues, suggestions):
        phase = await self.planner.run(issues, suggestions, self.state)
        self.sink.emit(EventType.PHASE_GENERATED, {
            "message": f"Planned phase: {phase.name}",
            "phase": {"name": phase.name, "description": phase.description,
                      "files": [f.path for f in phase.files]},
        })
        return phase

    async def execute_phase_implementation(self, static_analysis=None):
        """Implement the current phase. Returns (next state, fresh static analysis)."""
        phase = self.state.current_phase
        if phase is None:
            return DevState.PHASE_GENERATING, None

        try:
            if static_analysis is not None:
                issues = await self.issues.fetch_all(static_analysis=static_analysis)
            else:
                issues = await self.issues.fetch_all()
                await self.issues.reset()
            analysis = await self.implement_phase(phase, issues)
        except Exception as e:
            logger.exception("Phase implementation failed")
            self._emit_error(f"Phase implementation failed: {e}")
            return DevState.IDLE, None

        if phase.last_phase:
            return DevState.FINALIZING, analysis
        return DevState.PHASE_GENERATING, analysis

    async def implement_phase(self, phase, issues):
        """Stream, fix, commit, and deploy one phase's files. Returns the post-fix static analysis."""
        self.sink.emit(EventType.PHASE_IMPLEMENTING, {"message": f"Implementing {phase.name}", "phase": phase.name})

        def _opened(path):
            self.sink.emit(EventType.FILE_GENERATING, {"file_path": path})

        def _chunk(path, text, fmt):
            self.sink.emit(EventType.FILE_CHUNK_GENERATED, {"file_path": path, "chunk": text, "format": fmt})

        def _closed(generated):
            self.sink.emit(EventType.FILE_GENERATED, {"file": _file_summary(generated)})

        try:
            result = await self.generator.run(phase, issues, self.state, _opened, _chunk, _closed)
        except PhaseStreamError as e:
            partial = await self._settle_fixers(e.result)
            if partial:
                logger.warning("Keeping %d files streamed before the failure", len(partial))
                self._commit_generated(phase, partial)
            raise

        self.sink.emit(EventType.PHASE_VALIDATING, {"message": f"Validating {phase.name}", "phase": phase.name})
        fixed = self._commit_generated(phase, await self._settle_fixers(result))

        if result.commands:
            await self.execute_commands(result.commands)
        if fixed:
            await self.deploy_to_sandbox(fixed)
        analysis = await self.apply_deterministic_code_fixes()

        self.sink.emit(EventType.PHASE_VALIDATED, {"message": f"{phase.name} validated", "phase": phase.name})
        self._commit(self.state.with_phase_completed(phase.name))
        self.sink.emit(EventType.PHASE_IMPLEMENTED, {"message": f"{phase.name} implemented", "phase": phase.name})
        return analysis

    def _commit_generated(self, phase, files):
        purposes = {f.path: f.purpose for f in phase.files}
        files = [f if f.file_purpose else replace(f, file_purpose=purposes.get(f.file_path, "")) for f in files]
        self._commit(self.state.with_files(files))
        return files

    async def _settle_fixers(self, result):
        """Join all fixer tasks; a failed task yields the file as generated."""
        if not result.fixer_tasks:
            return list(result.files)
        outcomes = await asyncio.gather(*(task for _, task in result.fixer_tasks), return_exceptions=True)
        settled = {}
        for (original, _), outcome in zip(result.fixer_tasks, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Fixer failed for %s: %s", original.file_path, outcome)
                settled[original.file_path] = original
            else:
                settled[original.file_path] = outcome
        for f in result.files:
            settled.setdefault(f.file_path, f)
        return list(settled.values())

    async def apply_deterministic_code_fixes(self):
        """Fix typecheck issues without the LLM, then re-request static analysis."""
        if not self.state.sandbox_instance_id:
            return None
        try:
            analysis = await self.issues.run_static_analysis()
            typecheck = analysis["typecheck"]["issues"]
            if not typecheck:
                return analysis

            self.sink.emit(EventType.DETERMINISTIC_CODE_FIX_STARTED, {
                "message": "Applying deterministic fixes", "issues": len(typecheck),
            })
            fix = fix_project_issues(all_files(self.state), typecheck,
                                     fetch_file=lambda path: get_file(self.state, path))
            if fix.modified_files:
                self._commit(self.state.with_files(fix.modified_files))
                await self.deploy_to_sandbox(fix.modified_files)

            packages = []
            for item in fix.unfixable_issues:
                m = EXTERNAL_PACKAGE_RE.search(item["reason"])
                if m and _package_name(m.group(1)) not in packages:
                    packages.append(_package_name(m.group(1)))
            if packages:
                await self.execute_commands([f"{PACKAGE_MANAGER} add {' '.join(packages)}"])
                self.issues.invalidate_analysis()

            self.sink.emit(EventType.DETERMINISTIC_CODE_FIX_COMPLETED, {
                "message": "Deterministic fixes applied",
                "fixed_issues": len(fix.fixed_issues),
                "unfixable_issues": len(fix.unfixable_issues),
            })
            if fix.modified_files or packages:
                analysis = await self.issues.run_static_analysis()
            return analysis
        except Exception as e:
            logger.exception("Deterministic code fixes failed")
            self._emit_error(f"Deterministic code fixes failed: {e}")
            return None

    async def execute_review_cycle(self, cycles=None):
        cycles = cycles or DEFAULTS["review_cycles"]
        for cycle in range(cycles):
            if self.state.pending_user_inputs:
                logger.info("User input pending; returning to phase generation")
                return DevState.PHASE_GENERATING

            issues = await self.issues.fetch_all()
            await self.issues.reset()
            review = await self.review_code(issues)
            self._update(review_cycles=self.state.review_cycles + 1)
            if review is None or not review.issues_found:
                break

            if review.commands:
                await self.execute_commands(review.commands)
            to_fix = [f for f in review.files_to_fix if f.require_code_changes]
            if not to_fix:
                break

            outcomes = await asyncio.gather(*(self.regenerate_file(f) for f in to_fix), return_exceptions=True)
            regenerated = []
            for fix, outcome in zip(to_fix, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning("Regeneration failed for %s: %s", fix.file_path, outcome)
                elif outcome is not None:
                    regenerated.append(outcome)
            if regenerated:
                self._commit(self.state.with_files(regenerated))
                await self.deploy_to_sandbox(regenerated)

        if self.state.pending_user_inputs:
            return DevState.PHASE_GENERATING
        return DevState.IDLE

    async def review_code(self, issues):
        self.sink.emit(EventType.CODE_REVIEWING, {"message": "Reviewing code"})
        review = await self.reviewer.run(issues, self.state)
        self._update(last_review=review)
        self.sink.emit(EventType.CODE_REVIEWED, {
            "message": "Review complete" if review else "Review returned nothing",
            "review": asdict(review) if review else None,
        })
        return review

    async def regenerate_file(self, file_fix):
        original = get_file(self.state, file_fix.file_path)
        if original is None:
            logger.warning("Reviewer flagged unknown file %s", file_fix.file_path)
            return None
        self.sink.emit(EventType.FILE_REGENERATING, {
            "file_path": file_fix.file_path, "issues": list(file_fix.issues),
        })
        updated = await self.regenerator.run(original, self.state, issues=list(file_fix.issues))
        self.sink.emit(EventType.FILE_REGENERATED, {"file": _file_summary(updated)})
        return updated

    async def execute_finalizing(self):
        if self._has_finalized():
            return DevState.REVIEWING

        phase = PhaseConcept(
            name=FINALIZATION_PHASE,
            description=LAST_PHASE_DESCRIPTION,
            files=(),
            last_phase=True,
        )
        self._commit(self.state.with_phase(phase).evolve(current_phase=phase))
        issues = await self.issues.fetch_all()
        await self.issues.reset()
        await self.implement_phase(phase, issues)
        return DevState.REVIEWING

    # -- commands ---------------------------------------------------------------

    @staticmethod
    def _sanitize_commands(commands):
        cleaned = []
        for entry in commands:
            for line in str(entry).splitlines():
                if looks_like_command(line):
                    cmd = clean_command(line)
                    if cmd not in cleaned:
                        cleaned.append(cmd)
        return cleaned

    async def execute_commands(self, commands, chunk_size=None, max_retries=None):
        """Run commands in chunks, regenerating failures. Returns the commands that succeeded."""
        chunk_size = chunk_size or DEFAULTS["command_chunk_size"]
        max_retries = max_retries or DEFAULTS["command_max_retries"]
        commands = self._sanitize_commands(commands)
        instance_id = self.state.sandbox_instance_id
        if not commands or not instance_id:
            return []

        self.sink.emit(EventType.COMMAND_EXECUTING, {"message": "Executing commands", "commands": commands})
        successful = []
        unresolved = []

        for start in range(0, len(commands), chunk_size):
            pending = commands[start:start + chunk_size]
            failed = list(pending)
            for attempt in range(max_retries):
                resp = await self.sandbox.execute_commands(instance_id, pending)
                results = resp.get("results") or []
                if results:
                    ok = [r["command"] for r in results if r.get("success")]
                    failed_results = [r for r in results if not r.get("success")]
                elif resp.get("success"):
                    ok, failed_results = list(pending), []
                else:
                    ok = []
                    failed_results = [{"command": c, "error": resp.get("error", "")} for c in pending]
                successful.extend(c for c in ok if c not in successful)
                failed = [r["command"] for r in failed_results]
                if not failed or attempt == max_retries - 1:
                    break

                error_text = (
                    "Failed commands:\n"
                    + "\n".join(f"- {r['command']}: {r.get('error') or r.get('output', '')}" for r in failed_results)
                    + "\nSuccessful commands:\n"
                    + ("\n".join(f"- {c}" for c in successful) or "(none)")
                )
                try:
                    regenerated = await self.setup.generate_setup_commands(self.state, error=error_text)
                except Exception:
                    logger.exception("Could not regenerate failed commands")
                    break
                pending = [c for c in self._sanitize_commands(regenerated) if c not in successful]
                if not pending:
                    break
            unresolved.extend(c for c in failed if c not in successful)

        if successful:
            history = self.state.commands_history
            self._update(commands_history=history + tuple(c for c in successful if c not in history))
        if unresolved:
            logger.warning("Unresolved command failures: %s", unresolved)
            self._emit_error(f"Commands failed: {', '.join(unresolved)}")
        return successful

    # -- external inputs --------------------------------------------------------

    async def handle_user_input(self, message):
        """Queue an enhanced request and start generation if idle. Returns the reply."""
        try:
            reply, enhanced = await self.conversation.run(message, self.state)
            self._update(
                pending_user_inputs=self.state.pending_user_inputs + (enhanced,),
                conversation_messages=self.state.conversation_messages + (
                    {"role": "user", "content": message},
                    {"role": "assistant", "content": reply},
                ),
            )
            self.sink.emit(EventType.CONVERSATION_RESPONSE, {"message": reply})
        except Exception as e:
            logger.exception("Handling user input failed")
            self._emit_error(f"Could not process message: {e}")
            return None

        if not self.is_generating:
            self._generation_task = asyncio.ensure_future(self.generate_all_files())
        return reply

    def add_client_errors(self, errors):
        self._update(client_reported_errors=self.state.client_reported_errors + tuple(errors))

    def handle_webhook(self, event_type, payload):
        """Record a sandbox runtime error. Raises ValueError on a non-webhook payload."""
        if not isinstance(payload, dict) or payload.get("source") != "webhook":
            raise ValueError("Invalid webhook source")
        event = payload.get("event") or {}
        if event_type != "runtime_error" or event.get("eventType", "runtime_error") != "runtime_error":
            logger.info("Ignoring webhook event %s", event_type)
            return False

        error = (event.get("payload") or {}).get("error") or {}
        record = {
            "message": error.get("message", "") if isinstance(error, dict) else str(error),
            "instance_id": event.get("instanceId"),
            "timestamp": event.get("timestamp"),
            "source": "webhook",
        }
        self.add_client_errors([record])
        self.sink.emit(EventType.RUNTIME_ERROR_FOUND, {"errors": [record], "count": 1})
        return True

    # -- progress ---------------------------------------------------------------

    def get_total_files(self):
        planned = {f.path for p in self.state.generated_phases for f in p.files}
        initial = self.state.blueprint.initial_phase
        if initial is not None:
            planned.update(f.path for f in initial.files)
        planned.update(self.state.generated_files)
        return len(planned)

    def get_progress(self):
        phases = self.state.generated_phases
        return {
            "dev_state": self.state.dev_state.value,
            "generated_files": len(self.state.generated_files),
            "total_files": self.get_total_files(),
            "phases_completed": sum(1 for p in phases if p.completed),
            "phases_total": len(phases),
            "is_generating": self.is_generating,
        }

    async def wait_for_generation(self):
        if self._generation_task is not None:
            await self._generation_task

    async def close(self):
        await self.deployment.close()
        await self.flush_state()
        if self._owns_sandbox:
            await self.sandbox.close()
