"""
Matrix Framework - Centralized Configuration

Single source of truth for framework settings.
Environment-variable driven with safe defaults.
"""

import logging
import os
from dataclasses import dataclass, asdict
from typing import List, Optional, Dict, Any, Tuple


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.environ.get(key, str(default)).lower()
    return val in ("true", "1", "yes", "on")


def _env_int(key: str, default: int = 0) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_float(key: str, default: float = 0.0) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_list(key: str, default: str = "", sep: str = ",") -> List[str]:
    raw = os.environ.get(key, default)
    return [item.strip() for item in raw.split(sep) if item.strip()] if raw else []


# ══════════════════════════════════════════════════════════════════════════════
# PIPELINE CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PipelineConfig:
    """Plan/implement/review pipeline configuration."""
    acceptance_threshold: float = _env_float("MATRIX_ACCEPTANCE_THRESHOLD", 0.8)
    max_retries: int = _env_int("MATRIX_MAX_RETRIES", 1)

    def __post_init__(self):
        if not 0.0 <= self.acceptance_threshold <= 1.0:
            raise ValueError(f"acceptance_threshold must be in [0, 1], got {self.acceptance_threshold}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


# ══════════════════════════════════════════════════════════════════════════════
# AGENT CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AgentConfig:
    """Agent runtime configuration."""
    # Seconds slept per simulated unit of work (one suspension point per step)
    work_delay: float = _env_float("MATRIX_WORK_DELAY", 0.0)
    reputation_step: float = _env_float("MATRIX_REPUTATION_STEP", 0.1)
    initial_success_rate: float = _env_float("MATRIX_INITIAL_SUCCESS_RATE", 1.0)
    initial_reputation: float = _env_float("MATRIX_INITIAL_REPUTATION", 1.0)


# ══════════════════════════════════════════════════════════════════════════════
# METRICS CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus export configuration."""
    enabled: bool = _env_bool("MATRIX_METRICS_ENABLED", True)
    port: int = _env_int("MATRIX_METRICS_PORT", 9090)
    namespace: str = _env("MATRIX_METRICS_NAMESPACE", "matrix")


# ══════════════════════════════════════════════════════════════════════════════
# LOGGING CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""
    level: str = _env("MATRIX_LOG_LEVEL", "INFO")
    format: str = _env("MATRIX_LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    # Component loggers set to DEBUG regardless of level, e.g. "coordinator,pipeline"
    debug_components: Tuple[str, ...] = tuple(_env_list("MATRIX_DEBUG_COMPONENTS"))


_COMPONENT_LOGGERS = ("agent", "coordinator", "pipeline", "events", "matrix_metrics")


def configure_logging(
    level: Optional[str] = None,
    handler: Optional[logging.Handler] = None,
    format_string: Optional[str] = None,
) -> None:
    """Configure the framework's component loggers.

    Args:
        level: Log level name for all component loggers (default: LoggingConfig.level)
        handler: Custom handler (default: StreamHandler to stderr)
        format_string: Custom format string (default: LoggingConfig.format)
    """
    level = (level or logging_config.level).upper()
    formatter = logging.Formatter(format_string or logging_config.format)
    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    for name in _COMPONENT_LOGGERS:
        logger = logging.getLogger(name)
        # Replace handlers installed by a previous call
        for existing in list(logger.handlers):
            logger.removeHandler(existing)
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG if name in logging_config.debug_components else level)


# ══════════════════════════════════════════════════════════════════════════════
# GLOBAL CONFIG INSTANCE
# ══════════════════════════════════════════════════════════════════════════════

pipeline_config = PipelineConfig()
agent_config = AgentConfig()
metrics_config = MetricsConfig()
logging_config = LoggingConfig()


def get_all_configs() -> Dict[str, Any]:
    """Return all configuration as a serializable dictionary."""
    return {
        "pipeline": asdict(pipeline_config),
        "agent": asdict(agent_config),
        "metrics": asdict(metrics_config),
        "logging": {k: (list(v) if isinstance(v, tuple) else v)
                    for k, v in asdict(logging_config).items()},
    }
