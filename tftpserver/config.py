from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

TFTP_PORT_DEFAULT = 69
DYNAMIC_PORT_MIN = 49152
DYNAMIC_PORT_MAX = 65535

CWD_CONFIG_NAME = ".tftpserver_config.json"
HOME_CONFIG_NAME = ".tftpserver_config.json"

STORAGE_KINDS = ("directory", "memory")


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = TFTP_PORT_DEFAULT
    root_dir: Path = Path("")
    storage: str = "directory"
    allow_write: bool = True

    timeout_sec: float = 3.0
    max_retries: int = 5

    transfer_port_min: int = DYNAMIC_PORT_MIN
    transfer_port_max: int = DYNAMIC_PORT_MAX
    port_alloc_attempts: int = 32

    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_rotation: str = "size"  # "size" or "time"
    log_max_bytes: int = 5_000_000
    log_backup_count: int = 5
    log_when: str = "midnight"
    log_interval: int = 1

    audit_log_file: Optional[Path] = None
    transfer_log_file: Optional[Path] = None

    web: Dict[str, Any] = field(default_factory=lambda: {"enabled": False, "host": "127.0.0.1", "port": 8080})

    config_file: Optional[Path] = None

    def to_json(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "root_dir": str(self.root_dir),
            "storage": self.storage,
            "allow_write": self.allow_write,
            "timeout_sec": self.timeout_sec,
            "max_retries": self.max_retries,
            "transfer_port_min": self.transfer_port_min,
            "transfer_port_max": self.transfer_port_max,
            "port_alloc_attempts": self.port_alloc_attempts,
            "log_level": self.log_level,
            "log_file": str(self.log_file) if self.log_file else None,
            "log_rotation": self.log_rotation,
            "log_max_bytes": self.log_max_bytes,
            "log_backup_count": self.log_backup_count,
            "log_when": self.log_when,
            "log_interval": self.log_interval,
            "audit_log_file": str(self.audit_log_file) if self.audit_log_file else None,
            "transfer_log_file": str(self.transfer_log_file) if self.transfer_log_file else None,
            "web": self.web,
        }

    @classmethod
    def from_json(cls, data: dict) -> "ServerConfig":
        cfg = cls()
        cfg.host = str(data.get("host", cfg.host))
        cfg.port = int(data.get("port", cfg.port))
        cfg.root_dir = Path(data.get("root_dir") or "")
        cfg.storage = str(data.get("storage", cfg.storage)).lower()
        cfg.allow_write = bool(data.get("allow_write", cfg.allow_write))
        cfg.timeout_sec = float(data.get("timeout_sec", cfg.timeout_sec))
        cfg.max_retries = int(data.get("max_retries", cfg.max_retries))
        cfg.transfer_port_min = int(data.get("transfer_port_min") or cfg.transfer_port_min)
        cfg.transfer_port_max = int(data.get("transfer_port_max") or cfg.transfer_port_max)
        cfg.port_alloc_attempts = int(data.get("port_alloc_attempts", cfg.port_alloc_attempts))
        cfg.log_level = str(data.get("log_level", cfg.log_level))

        lf = data.get("log_file")
        cfg.log_file = Path(lf) if lf else None
        cfg.log_rotation = str(data.get("log_rotation", cfg.log_rotation)).lower()
        cfg.log_max_bytes = int(data.get("log_max_bytes", cfg.log_max_bytes))
        cfg.log_backup_count = int(data.get("log_backup_count", cfg.log_backup_count))
        cfg.log_when = str(data.get("log_when", cfg.log_when))
        cfg.log_interval = int(data.get("log_interval", cfg.log_interval))

        alf = data.get("audit_log_file")
        cfg.audit_log_file = Path(alf) if (alf not in (None, "")) else None
        tlf = data.get("transfer_log_file")
        cfg.transfer_log_file = Path(tlf) if (tlf not in (None, "")) else None

        web = dict(cfg.web)
        web.update(data.get("web") or {})
        cfg.web = web
        return cfg


def default_config_template() -> dict:
    return ServerConfig().to_json()


def resolve_config_path(cli_override: Optional[str] = None) -> Path:
    if cli_override:
        p = Path(cli_override).expanduser()
        if not p.exists():
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(json.dumps(default_config_template(), indent=2), encoding="utf-8")
        return p
    for p in [Path.cwd() / CWD_CONFIG_NAME, Path.home() / HOME_CONFIG_NAME]:
        if p.exists():
            return p
    # Create in CWD if none found
    create_path = Path.cwd() / CWD_CONFIG_NAME
    create_path.write_text(json.dumps(default_config_template(), indent=2), encoding="utf-8")
    return create_path


def load_config(path: Path) -> ServerConfig:
    data = json.loads(path.read_text(encoding="utf-8"))
    cfg = ServerConfig.from_json(data)
    cfg.config_file = path
    return cfg


def save_config(cfg: ServerConfig) -> None:
    if not cfg.config_file:
        raise ValueError("Config file path is not set on ServerConfig.")
    cfg.config_file.write_text(json.dumps(cfg.to_json(), indent=2), encoding="utf-8")


def validate_root_dir(cfg: ServerConfig) -> None:
    if not str(cfg.root_dir).strip() or str(cfg.root_dir) == ".":
        raise ValueError("root_dir is not set. Edit the config file and set it to an existing directory.")
    root = Path(cfg.root_dir).expanduser().resolve()
    if not root.exists() or not root.is_dir():
        raise ValueError(f"root_dir '{root}' does not exist or is not a directory.")


def validate_transfer_port_range(cfg: ServerConfig) -> None:
    lo, hi = cfg.transfer_port_min, cfg.transfer_port_max
    if not (1024 <= lo < hi <= 65535):
        raise ValueError(f"Invalid transfer port range: {lo}-{hi}")
    if cfg.port_alloc_attempts < 1:
        raise ValueError("port_alloc_attempts must be at least 1")


def validate_config(cfg: ServerConfig) -> None:
    if cfg.storage not in STORAGE_KINDS:
        raise ValueError(f"storage must be one of {STORAGE_KINDS}, not {cfg.storage!r}")
    if cfg.storage == "directory":
        validate_root_dir(cfg)
    validate_transfer_port_range(cfg)
    if cfg.timeout_sec <= 0:
        raise ValueError("timeout_sec must be positive")
    if cfg.max_retries < 0:
        raise ValueError("max_retries must not be negative")
    if not (0 <= cfg.port <= 65535):
        raise ValueError(f"Invalid listen port: {cfg.port}")
