"""Fixed model configuration sent with every completion request.

The payload is opaque to the run lifecycle: it is built once and handed to the
external service unchanged. Integer encodings follow the service's contract:

- ``frequency_penalty`` / ``presence_penalty``: values above 20 mean "unset"
- ``temperature``: scaled x10 (10 == 1.0), above 20 means "unset"
- ``top_p``: percentage 0-100, above 100 means "unset"
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional

PENALTY_UNSET = 21
TEMPERATURE_UNSET = 21
TOP_P_UNSET = 101


def _tool_manifest() -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": "web_search",
                "description": "Search the internet",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Search query"}
                    },
                    "required": ["query"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": "image_generation",
                "description": "Generates an image using Dalle-2",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "prompt": {
                            "type": "string",
                            "description": "Dalle-2 prompt to generate an image",
                        }
                    },
                    "required": ["prompt"],
                },
            },
        },
    ]


@dataclass(frozen=True)
class ModelConfig:
    model: str = "gpt-4-turbo-preview"
    frequency_penalty: int = PENALTY_UNSET
    logit_bias: str = ""
    max_tokens: int = 1000
    presence_penalty: int = PENALTY_UNSET
    response_format: str = '{"type":"text"}'
    seed: int = 0
    stop: str = ""
    temperature: int = 10
    top_p: int = TOP_P_UNSET
    tools: List[Dict[str, Any]] = field(default_factory=_tool_manifest)
    tool_choice: str = "auto"
    user: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        # The service expects the manifest as a JSON string.
        out["tools"] = json.dumps(self.tools, separators=(",", ":"))
        return out

    @classmethod
    def from_mapping(cls, overrides: Optional[Mapping[str, Any]]) -> "ModelConfig":
        """Default config with known keys from ``overrides`` applied; unknown keys are ignored."""
        base = cls()
        if not overrides:
            return base
        known = {f.name for f in fields(cls)} - {"tools"}
        return replace(base, **{k: v for k, v in overrides.items() if k in known})


DEFAULT_MODEL_CONFIG = ModelConfig()
