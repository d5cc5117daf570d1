import statistics
import threading
import time
from collections import Counter, deque
from typing import Any, Dict


class ProxyStats:
    """Thread-safe traffic counters shared by the server, admin API and dashboard."""

    def __init__(self):
        self.lock = threading.Lock()
        self.start_time = time.time()
        self.active_connections = 0
        self.total_connections = 0
        self.total_exchanges = 0
        self.outcomes = Counter()
        self.traffic_sent = 0       # bytes towards upstreams
        self.traffic_received = 0   # bytes towards callers
        self.response_times = deque(maxlen=1000)  # ms
        self.recent = deque(maxlen=10)

    def connection_opened(self):
        with self.lock:
            self.active_connections += 1
            self.total_connections += 1

    def connection_closed(self):
        with self.lock:
            self.active_connections -= 1

    def record_exchange(self, event: Dict[str, Any]):
        with self.lock:
            self.total_exchanges += 1
            self.outcomes[event.get("outcome", "unknown")] += 1
            self.traffic_sent += event.get("bytes_up", 0)
            self.traffic_received += event.get("bytes_down", 0)
            if event.get("duration_ms") is not None:
                self.response_times.append(event["duration_ms"])
            self.recent.append(event)

    def uptime(self) -> int:
        return int(time.time() - self.start_time)

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            times = list(self.response_times)
            return {
                "uptime": self.uptime(),
                "active_connections": self.active_connections,
                "total_connections": self.total_connections,
                "total_exchanges": self.total_exchanges,
                "outcomes": dict(self.outcomes),
                "traffic_sent": self.traffic_sent,
                "traffic_received": self.traffic_received,
                "response_times": {
                    "avg_ms": round(statistics.mean(times), 2) if times else None,
                    "min_ms": round(min(times), 2) if times else None,
                    "max_ms": round(max(times), 2) if times else None,
                },
                "recent": list(self.recent),
            }
