"""Tests for the discovery probes (command output parsing, sockets, HTTP banners)."""

from __future__ import annotations

import asyncio
import socket
import time
from types import SimpleNamespace

import httpx
import pytest

from jarvis.discovery import probes
from jarvis.discovery.probes import (
    BannerProbe,
    MdnsProbe,
    NeighborProbe,
    PingSweepProbe,
    PortProbe,
    SsdpProbe,
    _MdnsCollector,
    parse_ssdp_response,
)
from jarvis.errors import ProbeFailure

IP_NEIGH = """\
192.168.1.1 dev eth0 lladdr 00:1F:3F:12:34:56 REACHABLE
192.168.1.20 dev eth0 lladdr 00:17:88:aa:bb:cc STALE
192.168.1.99 dev eth0  FAILED
10.8.0.5 dev wg0 lladdr b8:27:eb:00:00:01 DELAY
fe80::1 dev eth0 lladdr 00:11:22:33:44:55 router REACHABLE
"""

PROC_ARP = """\
IP address       HW type     Flags       HW address            Mask     Device
192.168.1.1      0x1         0x2         00:1f:3f:12:34:56     *        eth0
192.168.1.50     0x1         0x0         00:00:00:00:00:00     *        eth0
192.168.1.60     0x1         0x2         00:00:00:00:00:00     *        eth0
"""


def _fake_run(responses):
    async def _run(*argv, timeout=10.0):
        key = argv[0]
        value = responses[key]
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(argv)
        return value
    return _run


class TestNeighborProbe:
    def test_parse_ip_neigh(self):
        entries = NeighborProbe.parse_ip_neigh(IP_NEIGH)
        assert ("192.168.1.1", "00:1f:3f:12:34:56") in entries
        assert ("192.168.1.99", None) not in entries
        assert len(entries) == 4

    def test_parse_proc_arp_skips_incomplete(self):
        entries = NeighborProbe.parse_proc_arp(PROC_ARP)
        assert entries == [("192.168.1.1", "00:1f:3f:12:34:56"), ("192.168.1.60", None)]

    async def test_probe_filters_to_subnet_and_names_vendor(self, monkeypatch):
        monkeypatch.setattr(probes, "run_command", _fake_run({"ip": (0, IP_NEIGH)}))
        records = await NeighborProbe().probe("192.168.1.0/24", 1.0)
        assert {r.ip for r in records} == {"192.168.1.1", "192.168.1.20"}
        hue = next(r for r in records if r.ip == "192.168.1.20")
        assert hue.vendor == "Philips Lighting"
        assert hue.discovery_method == "arp"

    async def test_falls_back_to_proc_arp(self, monkeypatch, tmp_path):
        monkeypatch.setattr(probes, "run_command", _fake_run({"ip": FileNotFoundError("ip")}))
        table = tmp_path / "arp"
        table.write_text(PROC_ARP)
        probe = NeighborProbe()
        probe.arp_table = str(table)
        records = await probe.probe(None, 1.0)
        assert [r.ip for r in records] == ["192.168.1.1", "192.168.1.60"]

    async def test_run_never_raises(self, monkeypatch):
        monkeypatch.setattr(probes, "run_command", _fake_run({"ip": PermissionError("denied")}))
        assert await NeighborProbe().run("192.168.1.0/24", 1.0) == []
        with pytest.raises(ProbeFailure):
            await NeighborProbe().run_checked("192.168.1.0/24", 1.0)


class TestPingSweep:
    async def test_replies_become_records(self, monkeypatch):
        def _reply(argv):
            ip = argv[-1]
            if ip.endswith((".1", ".3")):
                return 0, f"64 bytes from {ip}: icmp_seq=1 ttl=64 time=0.42 ms"
            return 1, ""

        monkeypatch.setattr(probes, "run_command", _fake_run({"ping": _reply}))
        records = await PingSweepProbe(concurrency=4).probe("10.0.0.0/29", 1.0)
        assert sorted(r.ip for r in records) == ["10.0.0.1", "10.0.0.3"]
        assert all(r.response_time == 0.42 for r in records)

    async def test_concurrency_is_bounded(self, monkeypatch):
        active = 0
        peak = 0

        async def _slow_ping(*argv, timeout=10.0):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return 1, ""

        monkeypatch.setattr(probes, "run_command", _slow_ping)
        await PingSweepProbe(concurrency=3).probe("10.0.0.0/28", 1.0)
        assert peak == 3

    async def test_missing_ping_binary_fails_probe(self, monkeypatch):
        monkeypatch.setattr(probes, "run_command", _fake_run({"ping": FileNotFoundError("ping")}))
        with pytest.raises(ProbeFailure):
            await PingSweepProbe().run_checked("10.0.0.0/30", 1.0)

    async def test_host_cap(self, monkeypatch):
        seen = []

        def _record(argv):
            seen.append(argv[-1])
            return 1, ""

        monkeypatch.setattr(probes, "run_command", _fake_run({"ping": _record}))
        await PingSweepProbe(max_hosts=5).probe("10.0.0.0/24", 1.0)
        assert len(seen) == 5

    async def test_large_subnet_is_capped_without_expanding_it(self, monkeypatch):
        seen = []

        def _record(argv):
            seen.append(argv[-1])
            return 1, ""

        monkeypatch.setattr(probes, "run_command", _fake_run({"ping": _record}))
        sweep = PingSweepProbe(max_hosts=4).probe("10.0.0.0/8", 1.0)
        assert await asyncio.wait_for(sweep, timeout=1.0) == []
        assert sorted(seen) == ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"]


class _FakeZeroconf:
    """Answers ``get_service_info`` from a ``{(type, name): info}`` table."""

    def __init__(self, infos=None) -> None:
        self.infos = infos or {}
        self.closed = False

    def get_service_info(self, type_, name):
        return self.infos.get((type_, name))

    def close(self) -> None:
        self.closed = True


def _info(addresses, server):
    return SimpleNamespace(parsed_addresses=lambda: list(addresses), server=server)


class TestMdns:
    HAP = "_hap._tcp.local."
    CAST = "_googlecast._tcp.local."

    def test_services_on_one_address_fold_into_one_entry(self):
        zc = _FakeZeroconf({
            (self.HAP, "Bridge._hap._tcp.local."): _info(["192.168.1.40"], "hue-bridge.local."),
            (self.CAST, "Hub._googlecast._tcp.local."): _info(["192.168.1.40"], "nest-hub.local."),
        })
        collector = _MdnsCollector()
        collector.add_service(zc, self.HAP, "Bridge._hap._tcp.local.")
        collector.add_service(zc, self.CAST, "Hub._googlecast._tcp.local.")

        assert list(collector.found) == ["192.168.1.40"]
        entry = collector.found["192.168.1.40"]
        assert entry["services"] == {"hap", "googlecast"}
        assert entry["hostname"] == "hue-bridge.local"

    def test_unresolved_service_is_ignored(self):
        collector = _MdnsCollector()
        collector.add_service(_FakeZeroconf(), self.HAP, "Gone._hap._tcp.local.")
        collector.update_service(
            _FakeZeroconf({(self.HAP, "x"): _info([], None)}), self.HAP, "x"
        )
        assert collector.found == {}

    async def test_browse_returns_one_record_per_address_in_subnet(self, monkeypatch):
        zc = _FakeZeroconf({
            (self.HAP, "a"): _info(["192.168.1.40"], "bridge.local."),
            (self.CAST, "b"): _info(["192.168.1.40"], None),
            (self.CAST, "c"): _info(["10.9.9.9"], "elsewhere.local."),
        })

        class _Browser:
            def __init__(self, zeroconf, types, handler):
                for type_, name in zeroconf.infos:
                    handler.add_service(zeroconf, type_, name)

            def cancel(self):
                pass

        monkeypatch.setattr(probes, "Zeroconf", lambda: zc)
        monkeypatch.setattr(probes, "ServiceBrowser", _Browser)

        [record] = await MdnsProbe().probe("192.168.1.0/24", 0.01)
        assert record.ip == "192.168.1.40"
        assert record.hostname == "bridge.local"
        assert record.services == frozenset({"hap", "googlecast"})
        assert record.discovery_method == "mdns"
        assert zc.closed


class TestSsdp:
    RESPONSE = (
        "HTTP/1.1 200 OK\r\n"
        "CACHE-CONTROL: max-age=1800\r\n"
        "LOCATION: http://192.168.1.50:49152/description.xml\r\n"
        "SERVER: Linux/3.14 UPnP/1.0 Sonos/70.3\r\n"
        "ST: upnp:rootdevice\r\n"
        "\r\n"
    )

    def test_parse_response_headers(self):
        headers = parse_ssdp_response(self.RESPONSE)
        assert headers["location"] == "http://192.168.1.50:49152/description.xml"
        assert headers["server"].startswith("Linux/3.14")

    def test_one_record_per_address(self):
        headers = parse_ssdp_response(self.RESPONSE)
        responses = [("192.168.1.50", headers), ("192.168.1.50", {}), ("10.1.1.1", headers)]
        records = SsdpProbe().records_from(responses, probes._parse_network("192.168.1.0/24"))
        assert len(records) == 1
        assert records[0].location.endswith("description.xml")
        assert records[0].services == frozenset({"upnp"})

    def test_missing_server_header(self):
        [record] = SsdpProbe().records_from([("192.168.1.7", {})])
        assert record.device_type == "Unknown UPnP Device"


class TestPortProbe:
    async def test_open_and_closed_ports(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        open_port = server.sockets[0].getsockname()[1]
        try:
            probe = PortProbe(ports=[open_port])
            found = await probe.scan("127.0.0.1", [open_port, 1], 0.5)
        finally:
            server.close()
            await server.wait_closed()
        assert found == [open_port]

    async def test_probe_without_target(self):
        assert await PortProbe().probe(None, 0.1) == []


class TestBannerProbe:
    async def test_extracts_server_and_title(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.port == 5000:
                return httpx.Response(
                    200,
                    headers={"server": "nginx", "content-type": "text/html"},
                    content=b"<html><head><title>\n  Synology   DiskStation\n</title></head></html>",
                )
            raise httpx.ConnectError("refused", request=request)

        probe = BannerProbe(ports=(80, 5000), transport=httpx.MockTransport(handler))
        [record] = await probe.probe("192.168.1.30", 1.0)
        [service] = record.web_services
        assert service.port == 5000
        assert service.scheme == "http"
        assert service.status == 200
        assert service.server == "nginx"
        assert service.title == "Synology DiskStation"

    async def test_https_ports_use_tls_scheme(self):
        schemes = []

        def handler(request: httpx.Request) -> httpx.Response:
            schemes.append(request.url.scheme)
            return httpx.Response(404)

        probe = BannerProbe(ports=(443,), transport=httpx.MockTransport(handler))
        [service] = await probe.grab("10.0.0.1", probe.ports, 1.0)
        assert schemes == ["https"]
        assert service.status == 404
        assert service.title == ""

    async def test_path_hints_fetched_on_answering_ports(self):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append((request.url.port, request.url.path))
            if request.url.port != 8123:
                raise httpx.ConnectError("refused", request=request)
            if request.url.path in ("/", "/description.xml"):
                return httpx.Response(200, headers={"server": "Hue/1.0"})
            return httpx.Response(404)

        probe = BannerProbe(
            ports=(8123, 8080),
            transport=httpx.MockTransport(handler),
            paths=["/description.xml", "/admin", "/", "/admin"],
        )
        services = await probe.grab("192.168.1.20", probe.ports, 1.0)

        assert [(s.port, s.path) for s in services] == [(8123, "/"), (8123, "/description.xml")]
        assert sorted(requested) == [
            (8080, "/"), (8123, "/"), (8123, "/admin"), (8123, "/description.xml"),
        ]


class TestSubnetDetection:
    async def test_scope_link_route(self, monkeypatch):
        routes = (
            "default via 192.168.1.1 dev eth0 proto dhcp\n"
            "172.17.0.0/16 dev docker0 proto kernel scope link src 172.17.0.1 linkdown\n"
        )
        monkeypatch.setattr(probes, "run_command", _fake_run({"ip": (0, routes)}))
        assert await probes.detect_subnet() == "172.17.0.0/16"

    async def test_default_when_undetectable(self, monkeypatch):
        monkeypatch.setattr(probes, "run_command", _fake_run({"ip": FileNotFoundError("ip")}))
        assert await probes.detect_subnet() == probes.DEFAULT_SUBNET


class TestReverseDns:
    async def test_slow_resolver_gives_up(self, monkeypatch):
        def _slow(ip):
            time.sleep(0.3)
            return ("late.local", [], [ip])

        monkeypatch.setattr(socket, "gethostbyaddr", _slow)
        started = time.monotonic()
        assert await probes.reverse_dns("192.168.1.20", timeout=0.05) == ""
        assert time.monotonic() - started < 0.25

    async def test_unresolved_is_empty(self, monkeypatch):
        def _missing(ip):
            raise socket.herror(1, "Unknown host")

        monkeypatch.setattr(socket, "gethostbyaddr", _missing)
        assert await probes.reverse_dns("192.168.1.21") == ""
