import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


logger = logging.getLogger("msgbridge.config")

MATCH_TYPES = ("exact", "prefix", "suffix", "contains")
IMAGE_MODES = ("placeholder", "reject", "passthrough")


@dataclass(frozen=True)
class ModelMappingRule:
    pattern: str
    target: str
    type: str = "exact"

    def matches(self, model: str) -> bool:
        if self.type == "exact":
            return model == self.pattern
        if self.type == "prefix":
            return model.startswith(self.pattern)
        if self.type == "suffix":
            return model.endswith(self.pattern)
        return self.pattern in model


@dataclass(frozen=True)
class ModelMapping:
    """Ordered model-name rewrite rules; the first matching rule wins."""

    rules: Tuple[ModelMappingRule, ...] = ()
    default_model: Optional[str] = None

    def resolve(self, requested: str) -> str:
        for rule in self.rules:
            if rule.matches(requested):
                return rule.target
        if self.default_model:
            return self.default_model
        return requested

    @property
    def patterns(self) -> List[str]:
        return [r.pattern for r in self.rules]

    @classmethod
    def from_obj(cls, obj: Any, default_model: Optional[str] = None) -> "ModelMapping":
        """Build from either ``{"mappings": [...], "defaultModel": ...}`` or a flat legacy object."""
        if not isinstance(obj, dict):
            return cls(default_model=default_model or None)
        rules: List[ModelMappingRule] = []
        if isinstance(obj.get("mappings"), list):
            for item in obj["mappings"]:
                if not isinstance(item, dict):
                    continue
                pattern = item.get("pattern")
                target = item.get("target")
                if not isinstance(pattern, str) or not isinstance(target, str) or not pattern or not target:
                    logger.warning("Skipping invalid model mapping rule: %r", item)
                    continue
                match_type = str(item.get("type") or "contains").lower()
                if match_type not in MATCH_TYPES:
                    match_type = "contains"
                rules.append(ModelMappingRule(pattern=pattern, target=target, type=match_type))
            # the mapping's own default wins over DEFAULT_MODEL
            default_model = obj.get("defaultModel") or obj.get("default_model") or default_model
        else:
            # legacy: {"claude-x": "target"} or {"claude-x": {"openaiModel": "target"}}
            for key, value in obj.items():
                target = value
                if isinstance(value, dict):
                    target = value.get("openaiModel") or value.get("targetModel")
                if isinstance(target, str) and target:
                    rules.append(ModelMappingRule(pattern=key, target=target, type="exact"))
        return cls(rules=tuple(rules), default_model=default_model if isinstance(default_model, str) and default_model else None)


def load_model_mapping(raw: Optional[str], default_model: Optional[str] = None) -> ModelMapping:
    """Read MODEL_MAP: inline JSON when it starts with '{', otherwise a path to a JSON file."""
    raw = (raw or "").strip()
    if not raw:
        return ModelMapping(default_model=default_model or None)
    try:
        if raw.startswith("{"):
            obj = json.loads(raw)
        else:
            with open(os.path.expanduser(raw), "r", encoding="utf-8") as f:
                obj = json.load(f)
    except Exception as e:
        logger.warning("Could not load MODEL_MAP (%s); model names pass through unchanged", e)
        return ModelMapping(default_model=default_model or None)
    return ModelMapping.from_obj(obj, default_model=default_model)


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.backend_base_url: str = os.environ.get("BACKEND_BASE_URL", "https://api.openai.com")
        self.backend_api_key: Optional[str] = os.environ.get("BACKEND_API_KEY")
        # Auth header style for upstream (x-api-key | authorization | both)
        self.backend_auth_style: str = os.environ.get("BACKEND_AUTH_STYLE", "both").strip().lower()
        if self.backend_auth_style not in ("x-api-key", "authorization", "both"):
            self.backend_auth_style = "both"
        self.default_model: Optional[str] = os.environ.get("DEFAULT_MODEL") or None
        self.model_mapping: ModelMapping = load_model_mapping(os.environ.get("MODEL_MAP"), self.default_model)
        # How image blocks are sent upstream (placeholder | reject | passthrough)
        self.image_mode: str = os.environ.get("IMAGE_MODE", "placeholder").strip().lower()
        if self.image_mode not in IMAGE_MODES:
            self.image_mode = "placeholder"
        self.debug: bool = _env_flag("DEBUG_PROXY", "")
        # Enable HTTP/2 when the h2 extra is installed
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")
        self.backoff_on_429: bool = _env_flag("PROXY_BACKOFF_ON_429", "1")
        try:
            self.max_retry_on_429: int = max(0, int(os.environ.get("PROXY_MAX_RETRY_ON_429", "1")))
        except Exception:
            self.max_retry_on_429 = 1
        try:
            self.max_retry_after_seconds: float = float(os.environ.get("PROXY_MAX_RETRY_AFTER", "2"))
        except Exception:
            self.max_retry_after_seconds = 2.0
        try:
            self.request_timeout: float = max(1.0, float(os.environ.get("PROXY_REQUEST_TIMEOUT", "120")))
        except Exception:
            self.request_timeout = 120.0

    def describe(self) -> Dict[str, Any]:
        return {
            "backend": self.backend_base_url,
            "auth_style": self.backend_auth_style,
            "image_mode": self.image_mode,
            "mappings": len(self.model_mapping.rules),
            "default_model": self.model_mapping.default_model,
        }


settings = Settings()
