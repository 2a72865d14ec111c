"""Main daemon service: hosts the loop manager and its IPC control surface"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from loopwork.agent.service import HTTPAgentService
from loopwork.automation.manager import MODEL_METADATA_KEY, WORKSPACE_METADATA_KEY, LoopManager
from loopwork.config import Settings, get_config_path
from loopwork.daemon.ipc import IPCServer
from loopwork.gateway.events import Event, EventBus, EventTypes
from loopwork.gateway.thread_store import ThreadStore
from loopwork.observability.logging_config import setup_logging
from loopwork.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class DaemonService:
    """Hosts the LoopManager for every thread and serves it over IPC.

    Lifecycle: ``start()`` loads settings, pauses loops left enabled by the
    previous process, opens the IPC socket and blocks until a stop request
    (IPC ``stop``, SIGINT or SIGTERM); then every runner is torn down.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        settings: Optional[Settings] = None,
        install_signal_handlers: bool = True,
    ):
        self.config_path = config_path or str(get_config_path())
        self.settings: Optional[Settings] = settings
        self.install_signal_handlers = install_signal_handlers
        self.store: Optional[ThreadStore] = None
        self.event_bus: Optional[EventBus] = None
        self.loop_manager: Optional[LoopManager] = None
        self.ipc_server: Optional[IPCServer] = None
        self.running = False
        self._stop_requested: Optional[asyncio.Event] = None

    def request_stop(self, reason: str = "request"):
        if self.running:
            logger.info(f"Shutdown requested ({reason})")
        self.running = False
        if self._stop_requested is not None:
            self._stop_requested.set()

    def _load_settings(self) -> Settings:
        config_file = Path(self.config_path)
        if not config_file.exists():
            logger.warning(f"No config at {config_file}, using defaults and environment")
            return Settings()
        logger.info(f"Loading configuration from {config_file}")
        return Settings.from_file(str(config_file))

    def setup(self):
        """Build the store, event bus, agent client, loop manager and IPC server"""
        if self.settings is None:
            self.settings = self._load_settings()
        s = self.settings

        self.store = ThreadStore(s.resolved_database_path)
        self.event_bus = EventBus()
        self.event_bus.on(EventTypes.TOAST, self._log_toast)
        agent_service = HTTPAgentService(
            s.agent_url,
            timeout_seconds=s.agent_timeout_seconds,
            event_bus=self.event_bus,
        )
        self.loop_manager = LoopManager(
            self.store,
            agent_service,
            events=self.event_bus,
            metrics=MetricsCollector(),
            api_timeout_ms=s.loop_api_timeout_ms,
            settle_seconds=s.loop_file_settle_seconds,
        )
        self.loop_manager.reset_all_on_startup()

        self.ipc_server = IPCServer(s.resolved_socket_path)
        self._register_ipc_handlers()

    async def start(self):
        """Run until a stop is requested"""
        if self.settings is None:
            self.settings = self._load_settings()
        setup_logging(
            level=self.settings.log_level,
            json_format=self.settings.log_json,
            log_file=self.settings.log_file,
        )
        self._stop_requested = asyncio.Event()
        if self.install_signal_handlers:
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, self.request_stop, signum.name)

        try:
            self.setup()
            await self.ipc_server.start()
            self.running = True
            await self.event_bus.emit(Event(type=EventTypes.SYSTEM_STARTUP, data={}))
            logger.info(f"Loopwork daemon ready on {self.ipc_server.socket_path}")
            await self._stop_requested.wait()
        except Exception as e:
            logger.error(f"Daemon failed: {e}", exc_info=True)
            raise
        finally:
            await self.stop()

    async def stop(self):
        """Tear down every runner, then close IPC"""
        self.running = False

        if self.loop_manager:
            self.loop_manager.stop_all()
            await self.loop_manager.wait_idle()

        if self.ipc_server and self.ipc_server.server:
            await self.ipc_server.stop()

        if self.event_bus:
            await self.event_bus.emit(Event(type=EventTypes.SYSTEM_SHUTDOWN, data={}))

        logger.info("Loopwork daemon stopped")

    def _log_toast(self, event: Event):
        logger.warning(f"Notification ({event.data.get('kind')}): {event.data.get('message')}")

    def _register_ipc_handlers(self):
        handlers = {
            "status": self._handle_status,
            "stop": self._handle_stop,
            "threads.list": self._handle_threads_list,
            "threads.set": self._handle_threads_set,
            "threads.delete": self._handle_threads_delete,
            "loop.get_config": self._handle_loop_get_config,
            "loop.update_config": self._handle_loop_update_config,
            "loop.start": self._handle_loop_start,
            "loop.stop": self._handle_loop_stop,
            "loop.status": self._handle_loop_status,
            "loop.stats": self._handle_loop_stats,
        }
        for command, handler in handlers.items():
            self.ipc_server.register_handler(command, handler)

    async def _handle_status(self) -> dict:
        runners = self.loop_manager.runners if self.loop_manager else {}
        return {
            "running": self.running,
            "active_loops": sum(1 for r in runners.values() if r.config.enabled),
            "busy_loops": sum(1 for r in runners.values() if r.running),
        }

    async def _handle_stop(self) -> dict:
        # answer first; the socket closes as part of shutdown
        asyncio.get_running_loop().call_soon(self.request_stop, "ipc")
        return {"status": "ok"}

    async def _handle_threads_list(self) -> List[str]:
        return self.store.list_thread_ids()

    async def _handle_threads_set(
        self,
        thread_id: str,
        workspace_path: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create or update a thread's workspace and model."""
        patch: Dict[str, Any] = {}
        if workspace_path is not None:
            patch[WORKSPACE_METADATA_KEY] = workspace_path
        if model is not None:
            patch[MODEL_METADATA_KEY] = model
        return self.store.update_metadata(thread_id, patch)

    async def _handle_threads_delete(self, thread_id: str) -> dict:
        self.loop_manager.cleanup_thread(thread_id)
        return {"deleted": self.store.delete_thread(thread_id)}

    async def _handle_loop_get_config(self, thread_id: str) -> Optional[dict]:
        config = self.loop_manager.get_config(thread_id)
        return config.to_dict() if config else None

    async def _handle_loop_update_config(self, thread_id: str, config: dict) -> dict:
        return (await self.loop_manager.update_config(thread_id, config)).to_dict()

    async def _handle_loop_start(self, thread_id: str) -> dict:
        return (await self.loop_manager.start(thread_id)).to_dict()

    async def _handle_loop_stop(self, thread_id: str) -> dict:
        return (await self.loop_manager.stop(thread_id)).to_dict()

    async def _handle_loop_status(self, thread_id: str) -> dict:
        return self.loop_manager.status(thread_id).to_dict()

    async def _handle_loop_stats(self, thread_id: Optional[str] = None) -> dict:
        return self.loop_manager.stats(thread_id)


def main(config_path: Optional[str] = None):
    """Run the daemon in the foreground until SIGINT/SIGTERM or an IPC stop"""
    try:
        asyncio.run(DaemonService(config_path=config_path).start())
    except Exception as e:
        logger.error(f"Daemon crashed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
