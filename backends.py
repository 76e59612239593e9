from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, get_args

from schemas import (
    BACKEND_ALIASES,
    PRIMARY_BACKEND,
    BackendName,
    ChatTurnRequest,
    UpstreamBody,
    UpstreamRequest,
)

BACKENDS: Tuple[BackendName, ...] = get_args(BackendName)

DEFAULT_TEMPERATURE = 0.7


class ConfigError(RuntimeError):
    """webhook URL/경로 설정이 없어서 요청을 보낼 수 없음 (스트림 열기 전에 실패)."""


def _flag(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _float(name: str, default: float) -> float:
    v = os.getenv(name)
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {v!r}")


@dataclass(frozen=True)
class BackendConfig:
    name: BackendName
    path: Optional[str]         # 전용 webhook 경로 (없으면 기본 경로 정책을 따름)
    temperature: float          # 요청에 temperature가 없을 때 기본값
    fallback_on_failure: bool   # 업스트림 장애 시 대체 응답을 만들지 여부

    @property
    def is_primary(self) -> bool:
        return self.name == PRIMARY_BACKEND


@dataclass(frozen=True)
class RelaySettings:
    base_url: Optional[str]
    default_path: Optional[str]
    allow_default_path_fallback: bool
    default_top_k: int
    backends: Dict[BackendName, BackendConfig]

    def backend(self, name: str) -> BackendConfig:
        return self.backends[resolve_backend(name)]


def load_settings() -> RelaySettings:
    """
    환경변수에서 dispatch 설정을 읽는다. 호출할 때마다 다시 읽으므로
    테스트/운영 중 env 변경이 바로 반영된다.
    """
    backends: Dict[BackendName, BackendConfig] = {}
    for name in BACKENDS:
        key = name.upper()
        primary = name == PRIMARY_BACKEND
        backends[name] = BackendConfig(
            name=name,
            path=None if primary else (os.getenv(f"N8N_WEBHOOK_PATH_{key}") or None),
            temperature=_float(f"TEMPERATURE_{key}", DEFAULT_TEMPERATURE),
            # primary는 장애를 그대로 에러로, 나머지는 대체 응답으로 (원래 제품 동작)
            fallback_on_failure=_flag(f"FALLBACK_ON_UPSTREAM_FAILURE_{key}", not primary),
        )

    return RelaySettings(
        base_url=os.getenv("N8N_BASE_URL") or None,
        default_path=os.getenv("N8N_WEBHOOK_PATH") or None,
        allow_default_path_fallback=_flag("ALLOW_DEFAULT_PATH_FALLBACK", True),
        default_top_k=int(os.getenv("DEFAULT_TOP_K", "5")),
        backends=backends,
    )


def resolve_backend(name: Optional[str]) -> BackendName:
    if not name:
        return PRIMARY_BACKEND
    name = BACKEND_ALIASES.get(name, name)
    if name not in BACKENDS:
        raise ConfigError(f"Unknown backend: {name!r}")
    return name  # type: ignore


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + "/" + path.lstrip("/")


def resolve_url(cfg: BackendConfig, settings: RelaySettings) -> str:
    if not settings.base_url:
        raise ConfigError("N8N configuration missing: N8N_BASE_URL is not set")

    path = cfg.path
    if not path:
        if cfg.is_primary or settings.allow_default_path_fallback:
            path = settings.default_path
        else:
            raise ConfigError(
                f"N8N configuration missing: N8N_WEBHOOK_PATH_{cfg.name.upper()} is not set "
                "and ALLOW_DEFAULT_PATH_FALLBACK is off"
            )

    if not path:
        raise ConfigError("N8N configuration missing: N8N_WEBHOOK_PATH is not set")

    return _join_url(settings.base_url, path)


def dispatch(turn: ChatTurnRequest, settings: Optional[RelaySettings] = None) -> UpstreamRequest:
    """ChatTurnRequest -> UpstreamRequest. 설정이 비어 있으면 ConfigError."""
    if settings is None:
        settings = load_settings()

    cfg = settings.backend(turn.backend)
    url = resolve_url(cfg, settings)

    temperature = turn.temperature if turn.temperature is not None else cfg.temperature

    return UpstreamRequest(
        url=url,
        body=UpstreamBody(
            text=turn.text,
            top_k=turn.top_k or settings.default_top_k,
            temperature=temperature,
            backend_tag=cfg.name,
        ),
    )
