"""Unit tests for the connectivity monitor."""

from __future__ import annotations

import socket
from types import SimpleNamespace

import pytest

from familysync import connectivity
from familysync.connectivity import ConnectivityMonitor, ConnectivitySettings


def _addr(family, address):
    return SimpleNamespace(family=family, address=address)


def _fake_psutil(eth_up: bool):
    return SimpleNamespace(
        net_if_addrs=lambda: {
            "eth0": [_addr(socket.AF_INET, "192.168.0.10")],
            "lo": [_addr(socket.AF_INET, "127.0.0.1")],
        },
        net_if_stats=lambda: {
            "eth0": SimpleNamespace(isup=eth_up),
            "lo": SimpleNamespace(isup=True),
        },
    )


def test_probe_ignores_loopback(monkeypatch):
    monkeypatch.setattr(connectivity, "psutil", _fake_psutil(eth_up=False))
    assert ConnectivityMonitor().probe() is False

    monkeypatch.setattr(connectivity, "psutil", _fake_psutil(eth_up=True))
    assert ConnectivityMonitor().probe() is True


def test_probe_uses_configured_targets(monkeypatch):
    monkeypatch.setattr(connectivity, "psutil", _fake_psutil(eth_up=True))
    seen = []

    def fake_checks(targets, timeout):
        seen.append((tuple(targets), timeout))
        return [{"target": "1.1.1.1:53", "reachable": False}]

    monkeypatch.setattr(connectivity, "_run_connectivity_checks", fake_checks)
    monitor = ConnectivityMonitor(ConnectivitySettings(checks=("1.1.1.1:53",), timeout=0.5))

    assert monitor.probe() is False
    assert seen == [(("1.1.1.1:53",), 0.5)]


def test_set_connected_publishes_only_changes():
    monitor = ConnectivityMonitor()
    changes = []
    monitor.subscribe(changes.append)

    monitor.set_connected(True)
    monitor.set_connected(False)
    monitor.set_connected(False)
    monitor.set_connected(True)

    assert changes == [False, True]
    assert monitor.is_connected


@pytest.mark.asyncio
async def test_refresh_updates_state_from_probe(monkeypatch):
    monkeypatch.setattr(connectivity, "psutil", _fake_psutil(eth_up=False))
    monitor = ConnectivityMonitor()

    assert await monitor.refresh() is False
    assert monitor.is_connected is False


def test_settings_from_config_normalizes_values():
    settings = ConnectivitySettings.from_config(
        {"connectivity": {"checks": " example.com:443 ", "timeout": -1, "interval": 2}}
    )

    assert settings.checks == ("example.com:443",)
    assert settings.timeout == connectivity.DEFAULT_CONNECTIVITY_TIMEOUT
    assert settings.interval == 2.0
    assert settings.enabled is True


def test_parse_target_defaults_port():
    assert connectivity._parse_target("example.com") == ("example.com", 443)
    assert connectivity._parse_target("10.0.0.1:53") == ("10.0.0.1", 53)
