from __future__ import annotations

import argparse
import logging
import queue
import threading
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import List, Optional

from . import VERSION
from .config import ServerConfig, load_config, resolve_config_path, validate_config
from .events import Event, EventFanout
from .server import TftpServer
from .storage import DirectoryFileStorage, FileStorage, MemoryFileStorage

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def configure_root_logging(cfg: ServerConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    if cfg.log_file:
        try:
            cfg.log_file.parent.mkdir(parents=True, exist_ok=True)
            if cfg.log_rotation == "time":
                fh = TimedRotatingFileHandler(
                    cfg.log_file,
                    when=cfg.log_when,
                    interval=cfg.log_interval,
                    backupCount=cfg.log_backup_count,
                    encoding="utf-8",
                )
            else:
                fh = RotatingFileHandler(
                    cfg.log_file, maxBytes=cfg.log_max_bytes, backupCount=cfg.log_backup_count, encoding="utf-8"
                )
            fh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
            logging.getLogger().addHandler(fh)
        except OSError as exc:
            print(f"Logging attach failed: {exc}")


def build_storage(cfg: ServerConfig) -> FileStorage:
    if cfg.storage == "memory":
        return MemoryFileStorage()
    return DirectoryFileStorage(cfg.root_dir)


def format_event(evt: Event) -> str:
    if evt.kind == "server":
        state = "RUNNING" if evt.message == "running" else "STOPPED"
        return f"[server] {state} on {evt.client[0]}:{evt.client[1]}"
    direction = "UPLOAD" if evt.is_write else "DOWNLOAD"
    if evt.kind == "rejected":
        direction = "REQUEST"
    return (
        f"[{evt.kind}] {direction} {evt.client[0]}:{evt.client[1]} {evt.filename} "
        f"port={evt.port} block={evt.block} bytes={evt.bytes_done} - {evt.message}"
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="tftpserver", description="TFTP server with an optional web status API.")
    p.add_argument("--config", "-c", help="Path to a config JSON file to use/initialize.")
    p.add_argument("--host", help="Override the listen address.")
    p.add_argument("--port", type=int, help="Override the well-known listen port.")
    p.add_argument("--root-dir", help="Serve and store files in this directory.")
    p.add_argument("--memory", action="store_true", help="Keep files in memory instead of a directory.")
    p.add_argument("--web", "-w", action="store_true", help="Start the web status API.")
    p.add_argument("--web-port", "-p", type=int, help="Override the web API port (default from config).")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return p.parse_args(argv)


def apply_overrides(cfg: ServerConfig, args: argparse.Namespace) -> None:
    if args.host:
        cfg.host = args.host
    if args.port is not None:
        cfg.port = args.port
    if args.root_dir:
        cfg.root_dir = Path(args.root_dir)
    if args.memory:
        cfg.storage = "memory"
    if args.web_port is not None:
        cfg.web["port"] = int(args.web_port)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg_path = resolve_config_path(args.config)
    try:
        cfg = load_config(cfg_path)
        apply_overrides(cfg, args)
        validate_config(cfg)
    except ValueError as exc:
        print(f"ERROR: {exc}")
        print(f"Edit this file and fix the setting: {cfg_path}")
        return 1

    configure_root_logging(cfg)
    logger = logging.getLogger("tftpserver")
    fanout = EventFanout()
    print_q = fanout.register()

    server = TftpServer(cfg, build_storage(cfg), logger, fanout)
    server.start()
    if not server.wait_ready(timeout=5):
        print(f"ERROR: could not start TFTP server on {cfg.host}:{cfg.port}: {server.startup_error}")
        server.stop()
        return 1

    if args.web or cfg.web.get("enabled", False):
        from .web import create_web_app, run_web

        web_host = str(cfg.web.get("host", "127.0.0.1"))
        web_port = int(cfg.web.get("port", 8080))
        threading.Thread(
            target=run_web,
            args=(create_web_app(server, fanout), web_host, web_port),
            name="TFTP-Web",
            daemon=True,
        ).start()
        print(f"Web API starting on {web_host}:{web_port}")

    print(f"TFTP server running with config: {cfg.config_file}. Press Ctrl+C to stop.")
    try:
        while server.is_running:
            try:
                print(format_event(print_q.get(timeout=0.5)))
            except queue.Empty:
                pass
    except KeyboardInterrupt:
        print("Stopping...")
    finally:
        server.stop()
    return 0
