import json
import os
from typing import Dict


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        # OpenAI-compatible endpoint; "/chat/completions" is appended per request
        self.upstream_base_url: str = os.environ.get("UPSTREAM_BASE_URL", "https://api.openai.com/v1")
        # MODEL_MAP expects a JSON object string mapping Anthropic model names → upstream model names
        model_map_raw = os.environ.get("MODEL_MAP", "{}")
        try:
            self.model_map: Dict[str, str] = json.loads(model_map_raw)
        except Exception:
            self.model_map = {}
        if not isinstance(self.model_map, dict):
            self.model_map = {}
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "600"))
        except ValueError:
            self.upstream_timeout = 600.0
        self.http2: bool = _env_flag("PROXY_HTTP2", "0")
        # Deterministic SSE script instead of an upstream call (x-debug-mock-stream / "dummy" key)
        self.enable_mock_stream: bool = _env_flag("ENABLE_MOCK_STREAM", "1")
        # 0 = unbounded producer/consumer queue between upstream reads and client writes
        try:
            self.stream_queue_size: int = max(0, int(os.environ.get("STREAM_QUEUE_SIZE", "0")))
        except ValueError:
            self.stream_queue_size = 0
        try:
            self.session_timeout_minutes: int = max(1, int(os.environ.get("SESSION_TIMEOUT_MINUTES", "30")))
        except ValueError:
            self.session_timeout_minutes = 30
        try:
            self.max_sessions_per_user: int = max(1, int(os.environ.get("MAX_SESSIONS_PER_USER", "50")))
        except ValueError:
            self.max_sessions_per_user = 50
        try:
            self.max_recent_turns: int = max(1, int(os.environ.get("MAX_RECENT_TURNS", "500")))
        except ValueError:
            self.max_recent_turns = 500
        self.debug: bool = _env_flag("DEBUG_PROXY", "")
        self.debug_sse: bool = _env_flag("DEBUG_SSE", "")
        self.log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        try:
            self.port: int = int(os.environ.get("PORT", "8080"))
        except ValueError:
            self.port = 8080

    @property
    def chat_completions_url(self) -> str:
        return f"{self.upstream_base_url.rstrip('/')}/chat/completions"

    def map_model(self, anthropic_model: str) -> str:
        return self.model_map.get(anthropic_model, anthropic_model)


settings = Settings()
