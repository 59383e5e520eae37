"""
sing-box engine adapter.

Validation runs `sing-box check` on a one-outbound config. Dialers are
one `mixed` inbound per profile inside a single `sing-box run`
process, each routed to its own outbound. Probes are HEAD requests
sent through those inbounds over socks5h.
"""

import asyncio
import json
import logging
import os
import re
import socket
import subprocess
import sys
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import requests

from proxysieve.core.errors import EngineError, ProbeError, ValidationError
from proxysieve.core.models import OutboundDescriptor, ProxyProfile
from proxysieve.core.utils import resolve_executable_path
from proxysieve.engine.base import Dialer, ProxyEngine
from proxysieve.network.http_client import HTTPClientManager

LISTEN_ADDRESS = "127.0.0.1"
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")

_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0


def _last_error_line(output: str) -> str:
    lines = [_ANSI_ESCAPE.sub("", line).strip() for line in output.splitlines()]
    lines = [line for line in lines if line]
    return lines[-1] if lines else ""


def _port_in_use(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((LISTEN_ADDRESS, port))
        except OSError:
            return True
    return False


def _port_open(port: int) -> bool:
    try:
        with socket.create_connection((LISTEN_ADDRESS, port), timeout=0.5):
            return True
    except OSError:
        return False


def _write_temp_json(prefix: str, data: Dict[str, Any]) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)
    return path


def _remove_quietly(path: Optional[str]):
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass


class SingBoxEngine(ProxyEngine):
    """Drives an external sing-box binary."""

    def __init__(self, binary_path: Optional[str] = None, fallbacks: Optional[List[str]] = None,
                 inbound_base_port: int = 20808, startup_timeout: float = 15,
                 check_timeout: float = 10, max_workers: int = 32,
                 http_manager: Optional[HTTPClientManager] = None):
        self.binary = resolve_executable_path("sing-box", binary_path, fallbacks or [])
        self.inbound_base_port = inbound_base_port
        self.startup_timeout = startup_timeout
        self.check_timeout = check_timeout
        self.http_manager = http_manager or HTTPClientManager()
        self.logger = logging.getLogger(__name__)

        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="sieve-probe")
        self._process: Optional[subprocess.Popen] = None
        self._config_path: Optional[str] = None
        self._log_path: Optional[str] = None

    def _require_binary(self) -> str:
        if not self.binary:
            raise EngineError("sing-box executable not found; set singbox_path or SIEVE_SINGBOX_PATH")
        return self.binary

    # Validation

    def check(self, descriptor: OutboundDescriptor):
        binary = self._require_binary()
        config = {"log": {"level": "panic"}, "outbounds": [descriptor.to_outbound("check")]}
        path = _write_temp_json("SINGBOX_CHECK_", config)
        try:
            result = subprocess.run(
                [binary, "check", "-c", path],
                capture_output=True,
                text=True,
                timeout=self.check_timeout,
                creationflags=_CREATION_FLAGS,
            )
        except subprocess.TimeoutExpired as e:
            raise ValidationError(f"sing-box check timed out after {self.check_timeout}s") from e
        finally:
            _remove_quietly(path)

        if result.returncode != 0:
            detail = _last_error_line(result.stderr) or _last_error_line(result.stdout)
            self.logger.debug(f"sing-box rejected {descriptor.server}:{descriptor.server_port}: {detail}")
            raise ValidationError(detail or f"sing-box check exited with status {result.returncode}")

    # Dialers

    def allocate_ports(self, count: int) -> List[int]:
        ports: List[int] = []
        port = self.inbound_base_port
        while len(ports) < count:
            if port > 65535:
                raise EngineError(f"not enough free ports above {self.inbound_base_port}")
            if not _port_in_use(port):
                ports.append(port)
            port += 1
        return ports

    @staticmethod
    def build_run_config(profiles: List[ProxyProfile], ports: List[int]) -> Dict[str, Any]:
        """One mixed inbound per profile, routed to that profile's outbound."""
        inbounds = []
        outbounds = []
        rules = []
        for profile, port in zip(profiles, ports):
            inbound_tag = f"in-{profile.tag}"
            inbounds.append({
                "type": "mixed",
                "tag": inbound_tag,
                "listen": LISTEN_ADDRESS,
                "listen_port": port,
            })
            outbounds.append(profile.to_outbound())
            rules.append({"inbound": [inbound_tag], "outbound": profile.tag})
        return {
            "log": {"level": "fatal"},
            "inbounds": inbounds,
            "outbounds": outbounds,
            "route": {"rules": rules},
        }

    def start(self, profiles: List[ProxyProfile]) -> Dict[str, Dialer]:
        binary = self._require_binary()
        if not profiles:
            return {}
        if self._process is not None:
            raise EngineError("sing-box is already running")
        if any(p.tag is None for p in profiles):
            raise EngineError("profiles must be tagged before starting dialers")

        ports = self.allocate_ports(len(profiles))
        self._config_path = _write_temp_json("SINGBOX_RUN_", self.build_run_config(profiles, ports))
        fd, self._log_path = tempfile.mkstemp(prefix="SINGBOX_RUN_", suffix=".log")

        with os.fdopen(fd, "w", encoding="utf-8") as log_file:
            self._process = subprocess.Popen(
                [binary, "run", "-c", self._config_path],
                stdout=subprocess.DEVNULL,
                stderr=log_file,
                creationflags=_CREATION_FLAGS,
            )
        self.logger.info(f"sing-box started (pid {self._process.pid}) with {len(ports)} inbounds")

        self._wait_for_ports(ports)
        return {p.tag: Dialer(p.tag, port) for p, port in zip(profiles, ports)}

    def _wait_for_ports(self, ports: List[int]):
        pending = list(ports)
        deadline = time.monotonic() + self.startup_timeout
        while pending:
            if self._process.poll() is not None:
                detail = self._read_log_tail()
                self.close()
                raise EngineError(f"sing-box exited during startup: {detail or 'no output'}")
            pending = [p for p in pending if not _port_open(p)]
            if not pending:
                break
            if time.monotonic() > deadline:
                self.close()
                raise EngineError(f"sing-box did not open {len(pending)} inbound port(s) within {self.startup_timeout}s")
            time.sleep(0.2)

    def _read_log_tail(self) -> str:
        if not self._log_path:
            return ""
        try:
            with open(self._log_path, "r", encoding="utf-8", errors="replace") as f:
                return _last_error_line(f.read())
        except OSError:
            return ""

    # Probing

    async def probe(self, dialer: Dialer, url: str, timeout: float) -> int:
        submitted = self._executor.submit(self._probe_blocking, dialer, url, timeout)
        future = asyncio.wrap_future(submitted)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # a request already on a worker thread cannot be interrupted
            if not submitted.cancel():
                await asyncio.wait({future})
                if not future.cancelled():
                    future.exception()
            raise

    def _probe_blocking(self, dialer: Dialer, url: str, timeout: float) -> int:
        session = self.http_manager.thread_session()
        start = time.monotonic()
        try:
            resp = session.head(url, proxies=dialer.proxies, timeout=timeout, allow_redirects=False)
        except requests.RequestException as e:
            raise ProbeError(str(e)) from e
        elapsed = (time.monotonic() - start) * 1000.0
        if resp.status_code >= 400:
            raise ProbeError(f"unexpected status code {resp.status_code}")
        return int(elapsed)

    def close(self):
        if self._process is not None:
            try:
                self._process.terminate()
                self._process.wait(timeout=3)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
            self._process = None
        _remove_quietly(self._config_path)
        _remove_quietly(self._log_path)
        self._config_path = None
        self._log_path = None
        self._executor.shutdown(wait=False, cancel_futures=True)
