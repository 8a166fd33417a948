"""Deployment controller for the single sandbox instance of a session.

All deployments for a session go through ``deploy``. A request that arrives
while another is running waits for it and then runs with its own payload, so
writes to the instance never interleave and at most one instance is ever
created at a time.
"""

import asyncio
import logging

from config.defaults import DEFAULTS
from core.events import EventType
from utils.naming import sandbox_project_name, webhook_url

logger = logging.getLogger(__name__)


class DeploymentController:
    """Creates, probes, and writes to the session's sandbox instance.

    Args:
        sandbox: SandboxClient (or anything with the same coroutine methods).
        get_state: callable returning the current CodeGenState.
        update_instance: callable(instance_id, preview_url, tunnel_url) that
            commits instance details into the owner's state.
        sink: EventSink for progress events.
    """

    def __init__(self, sandbox, get_state, update_instance, sink,
                 timeout=None, health_check_interval=None):
        self.sandbox = sandbox
        self._get_state = get_state
        self._update_instance = update_instance
        self._sink = sink
        self.timeout = timeout if timeout is not None else DEFAULTS["deployment_timeout"]
        self.health_check_interval = (
            health_check_interval if health_check_interval is not None
            else DEFAULTS["health_check_interval"]
        )
        self.generation = 0            # bumped after every successful deployment
        self._in_flight = None
        self._health_task = None
        self._redeploy_task = None

    async def deploy(self, files=None, redeploy=False):
        """Deploy ``files`` (default: every generated file). Returns the instance id or None.

        The queued attempt itself is what the next caller waits on, so an
        attempt that outlives its timeout still blocks later deployments.
        """
        previous = self._in_flight
        attempt = asyncio.ensure_future(self._run_after(previous, files, redeploy))
        self._in_flight = attempt
        if previous is not None and not previous.done():
            logger.info("Waiting for in-flight deployment")
            await asyncio.wait([previous])
        try:
            return await asyncio.wait_for(asyncio.shield(attempt), self.timeout)
        except asyncio.TimeoutError:
            logger.error("Deployment timed out after %ss", self.timeout)
            attempt.add_done_callback(self._log_late_result)
            self._sink.emit(EventType.DEPLOYMENT_FAILED, {
                "message": "Deployment timed out",
                "error": f"timed out after {self.timeout}s",
            })
            return None

    async def _run_after(self, previous, files, redeploy):
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await self._execute(files, redeploy)

    @staticmethod
    def _log_late_result(task):
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error("Timed-out deployment failed: %s", task.exception())
        else:
            logger.info("Timed-out deployment finished with instance %s", task.result())

    async def _execute(self, files, redeploy):
        state = self._get_state()
        to_write = list(files) if files is not None else list(state.generated_files.values())
        self._sink.emit(EventType.DEPLOYMENT_STARTED, {
            "message": "Deploying to sandbox",
            "files": [f.file_path for f in to_write],
        })

        instance_id = None if redeploy else state.sandbox_instance_id
        if instance_id:
            status = await self.sandbox.get_instance_status(instance_id)
            if not status.get("success") or not status.get("isHealthy", True):
                logger.warning("Instance %s failed its health probe; recreating", instance_id)
                instance_id = None

        if not instance_id:
            instance_id = await self._create_instance()
            if not instance_id:
                return None
            if files is None:
                to_write = list(self._get_state().generated_files.values())

        if to_write:
            resp = await self.sandbox.write_files(instance_id, to_write)
            if not resp.get("success"):
                logger.error("Writing %d files to %s failed: %s", len(to_write), instance_id, resp.get("error"))

        self.generation += 1
        state = self._get_state()
        self._sink.emit(EventType.DEPLOYMENT_COMPLETED, {
            "message": "Deployment complete",
            "instance_id": instance_id,
            "preview_url": state.preview_url,
            "tunnel_url": state.tunnel_url,
        })
        return instance_id

    async def _create_instance(self):
        state = self._get_state()
        resp = await self.sandbox.create_instance(
            state.template.name,
            sandbox_project_name(state),
            webhook_url(state.hostname, state.session_id),
        )
        run_id = resp.get("runId") if resp.get("success") else None
        if not run_id:
            error = resp.get("error") or "Sandbox did not return an instance id"
            logger.error("Instance creation failed: %s", error)
            self._update_instance(None, None, None)
            self._sink.emit(EventType.DEPLOYMENT_FAILED, {"message": "Instance creation failed", "error": error})
            self._sink.emit(EventType.ERROR, {"error": f"Deployment failed: {error}"})
            return None

        self._update_instance(run_id, resp.get("previewURL"), resp.get("tunnelURL"))
        logger.info("Created sandbox instance %s", run_id)

        history = list(state.commands_history)
        if history:
            replay = await self.sandbox.execute_commands(run_id, history)
            if not replay.get("success"):
                logger.warning("Command history replay failed: %s", replay.get("error"))

        self._start_health_check(run_id)
        return run_id

    # -- health check -----------------------------------------------------------

    def _start_health_check(self, instance_id):
        self._stop_health_check()
        self._health_task = asyncio.create_task(self._health_loop(instance_id))

    def _stop_health_check(self):
        if self._health_task is not None and self._health_task is not asyncio.current_task():
            self._health_task.cancel()
        self._health_task = None

    async def _health_loop(self, instance_id):
        while True:
            await asyncio.sleep(self.health_check_interval)
            if self._get_state().sandbox_instance_id != instance_id:
                return
            status = await self.sandbox.get_instance_status(instance_id)
            if status.get("success") and status.get("isHealthy", True):
                continue
            logger.warning("Health check failed for %s; redeploying", instance_id)
            self._health_task = None
            self._redeploy_task = asyncio.create_task(self.deploy(redeploy=True))
            return

    async def close(self):
        """Stop background health checks."""
        tasks = [t for t in (self._health_task, self._redeploy_task) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._health_task = None
        self._redeploy_task = None
