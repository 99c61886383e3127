"""Wiring of the default collaborators shared by the CLI and the web server."""

from dataclasses import dataclass
from typing import Optional

from .config.models import ShipwrightConfig
from .core.assistant import AssistantClient, CliAssistant, SessionPool
from .memory.service import MemoryService
from .memory.store import JsonFileBackend, MemoryStore
from .orchestrator.controller import OrchestrationController


@dataclass
class Services:
    """Long-lived objects of one process."""

    config: ShipwrightConfig
    session_pool: SessionPool
    memory_service: MemoryService
    controller: OrchestrationController


def build_memory_service(config: ShipwrightConfig) -> MemoryService:
    """Memory service persisted under ``<state_dir>/memories``."""
    backend = JsonFileBackend(config.get_state_dir() / "memories")
    return MemoryService(store=MemoryStore(backend), config=config.memory)


def build_services(
    config: ShipwrightConfig, client: Optional[AssistantClient] = None
) -> Services:
    """Build the session pool, memory service and controller from config.

    Args:
        config: Loaded configuration
        client: Assistant client (default: the configured CLI command)

    Returns:
        Services ready for use; persisted workflows are loaded back in
    """
    client = client or CliAssistant(
        command=config.assistant.command,
        default_timeout=config.assistant.timeout_seconds(),
    )
    session_pool = SessionPool(client, max_idle_per_config=config.assistant.max_idle_sessions)
    memory_service = build_memory_service(config)
    controller = OrchestrationController(
        session_pool,
        config=config,
        memory_service=memory_service if config.memory.enabled else None,
    )
    controller.registry.load_persisted()
    return Services(
        config=config,
        session_pool=session_pool,
        memory_service=memory_service,
        controller=controller,
    )
