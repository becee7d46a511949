"""Turn pipeline.

Runs one user turn for a chat:
  1. PromptBuilder assembles persona text, the prompt stack, triggered lore
     and the history window into the model input plus a tool catalog.
  2. TurnOrchestrator drives completion and the tool-calling loop, recording
     every message and the run outcome and notifying chat event listeners.
"""

from .orchestrator import TurnOrchestrator, build_tool_name, ensure_llm_config  # noqa: F401
from .prompt_builder import PromptBuilder, PromptBuildResult  # noqa: F401
