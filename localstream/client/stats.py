"""Packet loss and send rate from two consecutive aiortc stats reports."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TransportSample:
    at: float
    packets_sent: int = 0
    packets_lost: int = 0
    bytes_sent: int = 0


def sample_from_report(report, at: float, kind: str = "video") -> TransportSample:
    """Sum the outbound and remote-inbound RTP counters of one media kind."""
    sent = lost = sent_bytes = 0
    for stats in report.values():
        if getattr(stats, "kind", None) != kind:
            continue
        stats_type = getattr(stats, "type", None)
        if stats_type == "outbound-rtp":
            sent += getattr(stats, "packetsSent", 0) or 0
            sent_bytes += getattr(stats, "bytesSent", 0) or 0
        elif stats_type == "remote-inbound-rtp":
            lost += getattr(stats, "packetsLost", 0) or 0
    return TransportSample(at=at, packets_sent=sent, packets_lost=lost, bytes_sent=sent_bytes)


def packet_loss(previous: Optional[TransportSample], current: TransportSample) -> float:
    """Percentage of packets lost between two samples (0 without history)."""
    if previous is None:
        return 0.0
    sent = current.packets_sent - previous.packets_sent
    lost = current.packets_lost - previous.packets_lost
    if sent <= 0 or lost <= 0:
        return 0.0
    return min(100.0, lost / sent * 100)


def bitrate_kbps(previous: Optional[TransportSample], current: TransportSample) -> float:
    if previous is None or current.at <= previous.at:
        return 0.0
    delta = current.bytes_sent - previous.bytes_sent
    if delta <= 0:
        return 0.0
    return delta * 8 / (current.at - previous.at) / 1000
