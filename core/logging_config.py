"""
structlog 日志配置

DEBUG 下输出彩色控制台日志，其余环境输出单行 JSON。uvicorn、SQLAlchemy 等
标准库 logging 日志经 ProcessorFormatter 进入同一条处理链。
"""
import json
import logging
from typing import Any, List

import structlog
from structlog.stdlib import ProcessorFormatter

from core.config import settings


# 魔法链接令牌与卡片密钥不得出现在任何日志事件中
REDACTED_KEYS = frozenset({"raw_token", "token", "client_secret", "magic_link_token_hash"})


def redact_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _json_dumps(obj: Any, default: Any = None, **kwargs: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)


def get_renderer() -> Any:
    if settings.DEBUG:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.JSONRenderer(serializer=_json_dumps)


def configure_logging() -> None:
    pre_chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[ProcessorFormatter.remove_processors_meta, get_renderer()],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    # SDK 自身的请求日志会带上卡片对象，只保留告警
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DEBUG else logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
