import asyncio
import json
import os
import subprocess
import time

import pytest
import requests

from conftest import make_profiles
from proxysieve.core.cancel import CancelToken
from proxysieve.core.errors import EngineError, ProbeCancelledError, ProbeError, ProbeTimeoutError, ValidationError
from proxysieve.core.models import OutboundDescriptor, Protocol
from proxysieve.engine import singbox
from proxysieve.engine.base import Dialer
from proxysieve.engine.singbox import SingBoxEngine
from proxysieve.testing.latency import LatencyProber, LatencySettings


@pytest.fixture
def binary(tmp_path):
    path = tmp_path / "sing-box"
    path.write_text("", encoding="utf-8")
    return str(path)


@pytest.fixture
def descriptor():
    return OutboundDescriptor(Protocol.TROJAN, {"server": "t.example", "server_port": 443, "password": "pw"})


def fake_run(returncode=0, stdout="", stderr="", seen=None):
    def run(cmd, **kwargs):
        if seen is not None:
            seen["cmd"] = cmd
            with open(cmd[3], "r", encoding="utf-8") as f:
                seen["config"] = json.load(f)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
    return run


def test_check_writes_single_outbound_config(monkeypatch, binary, descriptor):
    seen = {}
    monkeypatch.setattr(singbox.subprocess, "run", fake_run(seen=seen))

    with SingBoxEngine(binary_path=binary) as engine:
        engine.check(descriptor)

    assert seen["cmd"][:3] == [binary, "check", "-c"]
    assert seen["config"] == {
        "log": {"level": "panic"},
        "outbounds": [{"type": "trojan", "tag": "check", "server": "t.example", "server_port": 443, "password": "pw"}],
    }
    assert not os.path.exists(seen["cmd"][3])


def test_check_failure_reports_last_line(monkeypatch, binary, descriptor):
    stderr = "\x1b[31mFATAL\x1b[0m[0000] decode config: outbounds[0]: unknown field\n\n"
    monkeypatch.setattr(singbox.subprocess, "run", fake_run(returncode=1, stderr=stderr))

    with SingBoxEngine(binary_path=binary) as engine:
        with pytest.raises(ValidationError) as exc:
            engine.check(descriptor)

    assert str(exc.value) == "FATAL[0000] decode config: outbounds[0]: unknown field"


def test_check_timeout(monkeypatch, binary, descriptor):
    def run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

    monkeypatch.setattr(singbox.subprocess, "run", run)

    with SingBoxEngine(binary_path=binary, check_timeout=3) as engine:
        with pytest.raises(ValidationError):
            engine.check(descriptor)


def test_missing_binary(monkeypatch, tmp_path, descriptor):
    monkeypatch.setattr(singbox.subprocess, "run", fake_run())
    monkeypatch.setattr("shutil.which", lambda name: None)

    with SingBoxEngine(binary_path=str(tmp_path / "nope"), fallbacks=[]) as engine:
        with pytest.raises(EngineError):
            engine.check(descriptor)
        with pytest.raises(EngineError):
            engine.start(make_profiles(1))


def test_run_config_routes_each_inbound_to_its_outbound():
    profiles = make_profiles(2)
    config = SingBoxEngine.build_run_config(profiles, [30000, 30001])

    assert [i["listen_port"] for i in config["inbounds"]] == [30000, 30001]
    assert all(i["type"] == "mixed" and i["listen"] == "127.0.0.1" for i in config["inbounds"])
    assert [o["tag"] for o in config["outbounds"]] == ["outbound-0", "outbound-1"]
    assert config["route"]["rules"] == [
        {"inbound": ["in-outbound-0"], "outbound": "outbound-0"},
        {"inbound": ["in-outbound-1"], "outbound": "outbound-1"},
    ]


def test_start_requires_tags(binary):
    with SingBoxEngine(binary_path=binary) as engine:
        with pytest.raises(EngineError):
            engine.start(make_profiles(1, tagged=False))
        assert engine.start([]) == {}


def test_allocate_ports_skips_busy(monkeypatch, binary):
    monkeypatch.setattr(singbox, "_port_in_use", lambda port: port == 40001)
    with SingBoxEngine(binary_path=binary, inbound_base_port=40000) as engine:
        assert engine.allocate_ports(3) == [40000, 40002, 40003]


class FakeProcess:
    def __init__(self, returncode=None):
        self.pid = 4242
        self.returncode = returncode
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        self.returncode = -9


def fake_popen(seen, returncode=None, stderr_text=""):
    def popen(cmd, stdout=None, stderr=None, creationflags=0):
        seen["cmd"] = cmd
        with open(cmd[3], "r", encoding="utf-8") as f:
            seen["config"] = json.load(f)
        if stderr_text:
            stderr.write(stderr_text)
        seen["process"] = FakeProcess(returncode)
        return seen["process"]
    return popen


@pytest.fixture
def free_ports(monkeypatch):
    monkeypatch.setattr(singbox, "_port_in_use", lambda port: False)


def test_start_returns_dialers_and_close_cleans_up(monkeypatch, binary, free_ports):
    seen = {}
    monkeypatch.setattr(singbox.subprocess, "Popen", fake_popen(seen))
    monkeypatch.setattr(singbox, "_port_open", lambda port: True)

    engine = SingBoxEngine(binary_path=binary, inbound_base_port=41000)
    dialers = engine.start(make_profiles(2))
    config_path, log_path = engine._config_path, engine._log_path

    assert seen["cmd"][:3] == [binary, "run", "-c"]
    assert [i["listen_port"] for i in seen["config"]["inbounds"]] == [41000, 41001]
    assert dialers == {"outbound-0": Dialer("outbound-0", 41000), "outbound-1": Dialer("outbound-1", 41001)}
    with pytest.raises(EngineError):
        engine.start(make_profiles(1))

    engine.close()

    assert seen["process"].terminated
    assert not os.path.exists(config_path)
    assert not os.path.exists(log_path)


def test_start_reports_early_exit(monkeypatch, binary, free_ports):
    seen = {}
    stderr = "\x1b[31mFATAL\x1b[0m[0000] start service: listen tcp 127.0.0.1:41000: address already in use\n"
    monkeypatch.setattr(singbox.subprocess, "Popen", fake_popen(seen, returncode=1, stderr_text=stderr))
    monkeypatch.setattr(singbox, "_port_open", lambda port: False)

    with SingBoxEngine(binary_path=binary, inbound_base_port=41000) as engine:
        with pytest.raises(EngineError) as exc:
            engine.start(make_profiles(1))
        assert engine._config_path is None

    assert "address already in use" in str(exc.value)
    assert not os.path.exists(seen["cmd"][3])


def test_start_gives_up_when_ports_stay_closed(monkeypatch, binary, free_ports):
    seen = {}
    monkeypatch.setattr(singbox.subprocess, "Popen", fake_popen(seen))
    monkeypatch.setattr(singbox, "_port_open", lambda port: False)

    with SingBoxEngine(binary_path=binary, startup_timeout=0.3) as engine:
        with pytest.raises(EngineError) as exc:
            engine.start(make_profiles(2))

    assert "did not open 2 inbound port(s)" in str(exc.value)
    assert seen["process"].terminated


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


def fake_head(seen, outcome):
    def head(self, url, **kwargs):
        seen["url"] = url
        seen.update(kwargs)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)
    return head


def test_head_request_goes_through_socks_inbound(monkeypatch, binary):
    seen = {}
    monkeypatch.setattr(requests.Session, "head", fake_head(seen, 204))

    with SingBoxEngine(binary_path=binary) as engine:
        delay = asyncio.run(engine.probe(Dialer("outbound-0", 41000), "https://example.com/generate_204", 5))

    assert delay >= 0
    assert seen["url"] == "https://example.com/generate_204"
    assert seen["proxies"] == {"http": "socks5h://127.0.0.1:41000", "https": "socks5h://127.0.0.1:41000"}
    assert seen["timeout"] == 5
    assert seen["allow_redirects"] is False


def test_error_status_is_rejected(monkeypatch, binary):
    monkeypatch.setattr(requests.Session, "head", fake_head({}, 503))

    with SingBoxEngine(binary_path=binary) as engine:
        with pytest.raises(ProbeError) as exc:
            asyncio.run(engine.probe(Dialer("outbound-0", 41000), "https://example.com", 5))

    assert str(exc.value) == "unexpected status code 503"


def test_request_errors_are_wrapped(monkeypatch, binary):
    monkeypatch.setattr(requests.Session, "head", fake_head({}, requests.ConnectionError("refused")))

    with SingBoxEngine(binary_path=binary) as engine:
        with pytest.raises(ProbeError) as exc:
            asyncio.run(engine.probe(Dialer("outbound-0", 41000), "https://example.com", 5))

    assert isinstance(exc.value.__cause__, requests.ConnectionError)


def slow_first_request(dialer, url, timeout):
    if dialer.tag == "outbound-0":
        time.sleep(1.5)
        return 1500
    time.sleep(0.05)
    return 50


def run_prober(engine, timeout, cancel_after=None):
    profiles = make_profiles(2)
    dialers = {p.tag: Dialer(p.tag, 41000 + i) for i, p in enumerate(profiles)}

    async def scenario():
        token = CancelToken()
        if cancel_after is not None:
            asyncio.get_running_loop().call_later(cancel_after, token.cancel)
        prober = LatencyProber(engine, LatencySettings(timeout=timeout), max_workers=1)
        return await asyncio.wait_for(prober.probe(profiles, dialers, token), 10)

    return {r.tag: r for r in asyncio.run(scenario())}


def test_timed_out_request_holds_its_worker_until_it_returns(monkeypatch, binary):
    with SingBoxEngine(binary_path=binary, max_workers=1) as engine:
        monkeypatch.setattr(engine, "_probe_blocking", slow_first_request)
        results = run_prober(engine, timeout=0.5)

    assert isinstance(results["outbound-0"].error, ProbeTimeoutError)
    assert results["outbound-1"].succeeded
    assert results["outbound-1"].delay_ms == 50


def test_cancelled_run_does_not_wait_for_busy_worker(monkeypatch, binary):
    with SingBoxEngine(binary_path=binary, max_workers=1) as engine:
        monkeypatch.setattr(engine, "_probe_blocking", slow_first_request)
        start = time.monotonic()
        results = run_prober(engine, timeout=30, cancel_after=0.1)
        elapsed = time.monotonic() - start

    assert all(isinstance(r.error, ProbeCancelledError) for r in results.values())
    assert elapsed < 1.2
