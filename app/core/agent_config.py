"""Agent configuration loader from YAML files.

Supports loading large prompts and greetings that exceed environment variable
limits, plus per-context persona overrides selected per call (for example a
"sales" or "support" line).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import structlog
import yaml


logger = structlog.get_logger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are a friendly AI voice assistant. Speak professionally, concisely "
    "and clearly, in one to three sentences."
)


@dataclass
class AgentConfig:
    """Agent configuration loaded from YAML file.

    Fields:
        instructions: Agent system prompt/instructions (required)
        greeting: Optional welcome message spoken at call start
        voice: Optional voice overriding the configured default
        contexts: Optional context name -> instructions overrides
        metadata: Optional metadata for documentation purposes
    """

    instructions: str = DEFAULT_INSTRUCTIONS
    greeting: Optional[str] = None
    voice: Optional[str] = None
    contexts: Dict[str, str] = field(default_factory=dict)
    metadata: Optional[Dict] = None

    @classmethod
    def from_yaml(cls, file_path: str | Path) -> "AgentConfig":
        """Load agent configuration from YAML file.

        Args:
            file_path: Path to YAML configuration file

        Returns:
            AgentConfig instance

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If YAML file is invalid
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Agent config file not found: {file_path}")

        logger.info("Loading agent config from YAML", file_path=str(file_path))

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML file: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("YAML file must contain a dictionary")

        instructions = data.get("instructions")
        greeting = data.get("greeting")
        voice = data.get("voice")
        contexts = data.get("contexts") or {}
        metadata = data.get("metadata")

        # Validate instructions (required field)
        if not instructions:
            raise ValueError("'instructions' field is required in YAML config")
        if not isinstance(instructions, str):
            raise ValueError("'instructions' field must be a string")
        if not isinstance(contexts, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in contexts.items()
        ):
            raise ValueError("'contexts' must map context names to instruction strings")

        # Strip whitespace from multi-line strings
        instructions = instructions.strip()
        if greeting:
            greeting = str(greeting).strip()
        contexts = {name: text.strip() for name, text in contexts.items()}

        logger.info(
            "Agent config loaded successfully",
            instructions_length=len(instructions),
            has_greeting=bool(greeting),
            contexts=sorted(contexts),
            metadata=metadata
        )

        return cls(
            instructions=instructions,
            greeting=greeting or None,
            voice=voice,
            contexts=contexts,
            metadata=metadata
        )

    def instructions_for(self, context: Optional[str]) -> str:
        """Instructions for a call context, falling back to the defaults."""
        if context and context in self.contexts:
            return self.contexts[context]
        return self.instructions

    def to_dict(self) -> Dict:
        """Convert to dictionary for logging/debugging.

        Returns:
            Dictionary representation
        """
        return {
            "instructions": self.instructions[:100] + "..." if len(self.instructions) > 100 else self.instructions,
            "greeting": self.greeting[:100] + "..." if self.greeting and len(self.greeting) > 100 else self.greeting,
            "voice": self.voice,
            "contexts": sorted(self.contexts),
            "metadata": self.metadata,
            "instructions_length": len(self.instructions),
            "greeting_length": len(self.greeting) if self.greeting else 0
        }
