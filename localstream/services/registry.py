import threading
from typing import Any, Dict, List, Optional

from ..models import Stream


class StreamRegistry:
    """Published streams, their viewer counts and last reported stats."""

    def __init__(self):
        self._streams: Dict[str, Stream] = {}
        self._lock = threading.Lock()

    def add(self, stream: Stream) -> Stream:
        with self._lock:
            self._streams[stream.id] = stream
        return stream

    def get(self, stream_id: str) -> Optional[Stream]:
        with self._lock:
            return self._streams.get(stream_id)

    def remove(self, stream_id: str) -> Optional[Stream]:
        with self._lock:
            return self._streams.pop(stream_id, None)

    def add_viewer(self, stream_id: str) -> Optional[Stream]:
        with self._lock:
            stream = self._streams.get(stream_id)
            if stream is not None:
                stream.viewers += 1
            return stream

    def remove_viewer(self, stream_id: str) -> Optional[Stream]:
        with self._lock:
            stream = self._streams.get(stream_id)
            if stream is not None:
                stream.viewers = max(0, stream.viewers - 1)
            return stream

    def update_stats(self, stream_id: str, stats: Dict[str, Any]) -> Optional[Stream]:
        with self._lock:
            stream = self._streams.get(stream_id)
            if stream is not None:
                stream.stats.update(stats)
            return stream

    def network_usage(self) -> Dict[str, Any]:
        with self._lock:
            total = sum(float(s.stats.get("bitrate") or 0) for s in self._streams.values())
            return {"totalBitrate": total, "streamCount": len(self._streams)}

    def to_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.to_dict() for s in self._streams.values()]

    def clear(self) -> None:
        with self._lock:
            self._streams.clear()

    def __len__(self) -> int:
        return len(self._streams)

    def __contains__(self, stream_id) -> bool:
        return stream_id in self._streams
