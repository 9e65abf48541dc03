"""Tests for signature-based device classification."""

from __future__ import annotations

import pytest

from jarvis.discovery.classifier import (
    MAC_WEIGHT,
    NAME_WEIGHT,
    PORT_WEIGHT,
    WEB_HINT_WEIGHT,
    DeviceClassifier,
    Signature,
    _sig,
)
from jarvis.discovery.models import Device, WebService


@pytest.fixture
def classifier():
    return DeviceClassifier()


class TestDefaultSignatures:
    def test_home_assistant_by_port_and_banner(self, classifier):
        device = Device(
            ip="192.168.1.10",
            open_ports={8123},
            web_services=[WebService(port=8123, title="Home Assistant")],
        )
        result = classifier.classify(device)
        assert result.type == "Home Assistant"
        assert result.confidence == PORT_WEIGHT + WEB_HINT_WEIGHT
        assert "Open ports: 8123" in result.reasons

    def test_hue_bridge_by_mac(self, classifier):
        device = Device(ip="192.168.1.20", mac="00:17:88:aa:bb:cc", vendor="Philips Lighting")
        result = classifier.classify(device)
        assert result.type == "Philips Hue"
        assert result.confidence == MAC_WEIGHT + NAME_WEIGHT
        assert any("MAC matches" in r for r in result.reasons)

    def test_printer_ports(self, classifier):
        result = classifier.classify(Device(ip="192.168.1.30", open_ports={631, 9100}))
        assert result.type == "Printer"
        assert result.confidence == 2 * PORT_WEIGHT

    def test_chromecast_from_mdns_service(self, classifier):
        device = Device(ip="192.168.1.40", open_ports={8008, 8009}, services={"googlecast"})
        result = classifier.classify(device)
        assert result.type == "Chromecast"

    def test_no_evidence_is_unknown(self, classifier):
        result = classifier.classify(Device(ip="192.168.1.50"))
        assert result.type == "Unknown"
        assert result.confidence == 0
        assert result.reasons == ()


class TestScoring:
    def test_tie_keeps_first_declared(self):
        classifier = DeviceClassifier([
            _sig("Alpha", ports=(80,)),
            _sig("Beta", ports=(80,)),
        ])
        assert classifier.classify(Device(ip="10.0.0.1", open_ports={80})).type == "Alpha"

    def test_confidence_is_clamped(self):
        greedy = _sig("Greedy", ports=tuple(range(1, 11)))
        device = Device(ip="10.0.0.1", open_ports=set(range(1, 11)))
        assert DeviceClassifier([greedy]).classify(device).confidence == 100

    def test_path_hints_count_per_match(self):
        sig = _sig("Cam", paths=("/onvif/", "/cgi-bin/"))
        device = Device(
            ip="10.0.0.1",
            web_services=[WebService(port=80, path="/onvif/device"), WebService(port=81, path="/cgi-bin/x")],
        )
        result = DeviceClassifier([sig]).score(sig, device)
        assert result.confidence == 2 * WEB_HINT_WEIGHT

    def test_path_hints_listed_once_in_table_order(self):
        sigs = [_sig("A", paths=("/api", "/admin")), _sig("B", paths=("/admin", "/onvif/")), _sig("C")]
        assert DeviceClassifier(sigs).path_hints() == ["/api", "/admin", "/onvif/"]
        assert "/description.xml" in DeviceClassifier().path_hints()

    def test_classification_uses_accumulated_evidence(self, classifier):
        device = Device(ip="10.0.0.5", open_ports={22})
        assert classifier.classify(device).type == "NAS/Storage"
        device.web_services.append(WebService(port=5000, server="Synology DSM"))
        device.open_ports.add(5000)
        result = classifier.classify(device)
        assert result.type == "NAS/Storage"
        assert result.confidence == 2 * PORT_WEIGHT + WEB_HINT_WEIGHT

    def test_signature_defaults(self):
        sig = Signature(name="Bare")
        assert DeviceClassifier([sig]).classify(Device(ip="10.0.0.1", open_ports={80})).type == "Unknown"
