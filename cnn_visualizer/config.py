"""
Runtime configuration
=====================
Everything the server needs from its environment lives here, so that the
rest of the code never reads ``os.environ`` directly.

Environment variables:
    PORT, HOST          where the HTTP/WebSocket server listens
    OPENAI_API_KEY      completion-service credential (optional; without it
                        the chat assistant answers from canned responses)
    OPENAI_BASE_URL     OpenAI-compatible API root
    CHAT_MODEL          model name sent with each completion request
    CHAT_TIMEOUT        seconds to wait for the completion service
    CNN_ENGINE          'mock' or 'numpy'
    CNN_PACING          multiplier for the visualization delays (0 disables)
    LOG_LEVEL           logging level name
"""
import logging
import os
from dataclasses import dataclass, replace

from .chat import DEFAULT_BASE_URL, DEFAULT_MODEL

logger = logging.getLogger(__name__)


def _float(environ, key, default):
    raw = environ.get(key)
    if raw in (None, ''):
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    host: str = '0.0.0.0'
    port: int = 3000
    openai_api_key: str = None
    openai_base_url: str = DEFAULT_BASE_URL
    chat_model: str = DEFAULT_MODEL
    chat_timeout: float = 30.0
    engine: str = 'mock'
    pacing: float = 1.0
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        return cls(
            host=environ.get('HOST') or cls.host,
            port=int(_float(environ, 'PORT', cls.port)),
            openai_api_key=environ.get('OPENAI_API_KEY') or None,
            openai_base_url=environ.get('OPENAI_BASE_URL') or cls.openai_base_url,
            chat_model=environ.get('CHAT_MODEL') or cls.chat_model,
            chat_timeout=_float(environ, 'CHAT_TIMEOUT', cls.chat_timeout),
            engine=(environ.get('CNN_ENGINE') or cls.engine).lower(),
            pacing=max(0.0, _float(environ, 'CNN_PACING', cls.pacing)),
            log_level=(environ.get('LOG_LEVEL') or cls.log_level).upper(),
        )

    def override(self, **changes):
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    @property
    def chat_enabled(self):
        return bool(self.openai_api_key)
