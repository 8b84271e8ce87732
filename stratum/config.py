"""Configuration for stratum.

Resolution order (highest priority first):
1. Programmatic (StratumConfig constructed in code, or CLI flags)
2. Environment variables (STRATUM_MAX_WORKERS, STRATUM_ENFORCE_PURITY,
   STRATUM_SEED_TABLE, STRATUM_LOG_LEVEL)
3. Config file (~/.config/stratum/config.json, or STRATUM_CONFIG)
4. Hardcoded defaults
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "stratum"
CONFIG_FILE = CONFIG_DIR / "config.json"

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class StratumConfig:
    """Knobs for a bootstrap run.

    - max_workers: thread pool size for independent rebuilds within a stage
    - enforce_purity: wrappers reject search paths outside the store
    - seed_table: JSON file with extra seed bundles ("" = built-in table only)
    - log_level: name understood by ``logging``
    """

    max_workers: int = os.cpu_count() or 1
    enforce_purity: bool = True
    seed_table: str = ""
    log_level: str = "WARNING"

    @classmethod
    def load(cls, path: Path | None = None, env: dict[str, str] | None = None) -> "StratumConfig":
        """Defaults, then the config file, then environment variables."""
        env = os.environ if env is None else env
        config = cls()

        path = path or Path(env.get("STRATUM_CONFIG", CONFIG_FILE))
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
            types = {f.name: f.type for f in fields(cls)}
            for key, value in data.items():
                if key not in types:
                    logger.warning("ignoring unknown config key %r in %s", key, path)
                    continue
                expected = types[key]
                # bool is an int, but not a worker count
                if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                    raise ValueError(f"{path}: {key} must be {expected.__name__}, got {value!r}")
                setattr(config, key, value)

        if "STRATUM_MAX_WORKERS" in env:
            try:
                config.max_workers = int(env["STRATUM_MAX_WORKERS"])
            except ValueError as e:
                raise ValueError(
                    f"STRATUM_MAX_WORKERS must be an integer, got {env['STRATUM_MAX_WORKERS']!r}") from e
        if "STRATUM_ENFORCE_PURITY" in env:
            config.enforce_purity = env["STRATUM_ENFORCE_PURITY"].lower() in _TRUE
        if "STRATUM_SEED_TABLE" in env:
            config.seed_table = env["STRATUM_SEED_TABLE"]
        if "STRATUM_LOG_LEVEL" in env:
            config.log_level = env["STRATUM_LOG_LEVEL"]

        if config.max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {config.max_workers}")
        return config

    def save(self, path: Path | None = None) -> Path:
        path = path or CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)
        return path
