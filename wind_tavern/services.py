"""Service container.

One Services instance per application owns every piece of shared mutable
state: the in-flight chat registry, the event bus and the tool connection
map. Nothing here is a module-level singleton, so each app (and each test)
gets its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from wind_tavern.config import Settings
from wind_tavern.events import ChatEventBus, InFlightChats
from wind_tavern.llm import LLM, HttpLLM
from wind_tavern.mcp_client import Connector, ToolConnectionManager
from wind_tavern.pipeline import PromptBuilder, TurnOrchestrator
from wind_tavern.prompt_stack import PromptStackService
from wind_tavern.storage import Storage
from wind_tavern.tokens import create_token_counter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: Storage
    events: ChatEventBus
    in_flight: InFlightChats
    tools: ToolConnectionManager
    llm: LLM
    prompt_builder: PromptBuilder
    prompt_stack: PromptStackService
    orchestrator: TurnOrchestrator

    async def aclose(self) -> None:
        await self.tools.close()


def build_services(
    settings: Settings,
    llm: LLM | None = None,
    connector: Connector | None = None,
) -> Services:
    storage = Storage(settings.data_dir)
    events = ChatEventBus()
    in_flight = InFlightChats()
    tools = ToolConnectionManager(connector)
    llm = llm or HttpLLM(timeout=settings.llm_timeout)
    counter = create_token_counter(settings.tokenizer, settings.tokenizer_model)
    prompt_builder = PromptBuilder(storage, counter)
    orchestrator = TurnOrchestrator(
        storage=storage,
        llm=llm,
        prompt_builder=prompt_builder,
        tools=tools,
        events=events,
        in_flight=in_flight,
    )
    logger.info("services ready data_dir=%s tokenizer=%s", settings.data_dir, settings.tokenizer)
    return Services(
        settings=settings,
        storage=storage,
        events=events,
        in_flight=in_flight,
        tools=tools,
        llm=llm,
        prompt_builder=prompt_builder,
        prompt_stack=PromptStackService(storage),
        orchestrator=orchestrator,
    )
