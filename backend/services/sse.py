"""In-memory Server-Sent-Events registry for live dashboard updates.

Delivery is best-effort and at-most-once: a client whose queue cannot accept
a message is dropped, and nothing is replayed on reconnect.
"""

import asyncio
import json
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Callable, AsyncIterator
import logging

from config.game_config import SSE_CONFIG

logger = logging.getLogger(__name__)

WILDCARD_TEAM = "admin"
WILDCARD_ROUND = "all"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class SSEClient:
    """One open event stream, tagged with the team and round it listens to."""

    def __init__(self, team: str, round: str, ip: Optional[str] = None,
                 user_agent: Optional[str] = None, queue_size: int = 100,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.id = f"{team}-{round}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        self.team = team
        self.round = round
        self.ip = ip
        self.user_agent = user_agent
        self.connected_at = datetime.now(timezone.utc)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.loop = loop
        self.closed = False

    def _put(self, message: Optional[str]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.closed = True

    def send(self, payload: Dict[str, Any]) -> None:
        """Queue one event. Raises ConnectionError if the client can no longer receive."""
        if self.closed:
            raise ConnectionError(f"SSE client {self.id} is closed")
        message = format_event(payload)
        if self.loop is None or _running_loop() is self.loop:
            try:
                self.queue.put_nowait(message)
            except asyncio.QueueFull as e:
                self.closed = True
                raise ConnectionError(f"SSE client {self.id} queue is full") from e
        else:
            # Called from a worker thread; hand the message to the stream's loop
            self.loop.call_soon_threadsafe(self._put, message)

    def close(self) -> None:
        self.closed = True
        try:
            if self.loop is None or _running_loop() is self.loop:
                self._put(None)
            else:
                self.loop.call_soon_threadsafe(self._put, None)
        except RuntimeError:
            # Event loop already gone; the stream has ended with it
            pass

    def matches(self, team: Optional[str], round: Optional[str]) -> bool:
        team_ok = team is None or self.team == team or self.team == WILDCARD_TEAM
        round_ok = round is None or self.round == round or self.round == WILDCARD_ROUND
        return team_ok and round_ok

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "team": self.team,
            "round": self.round,
            "connectedAt": self.connected_at.isoformat(),
            "ip": self.ip,
            "userAgent": self.user_agent,
        }


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class SSERegistry:
    """Process-local set of connected SSE clients with filtered broadcast."""

    def __init__(self, queue_size: int = SSE_CONFIG["queue_size"]):
        self.clients: Dict[str, SSEClient] = {}
        self.queue_size = queue_size
        self._lock = threading.RLock()

    def connect(self, team: str = WILDCARD_TEAM, round: str = WILDCARD_ROUND,
                ip: Optional[str] = None, user_agent: Optional[str] = None) -> SSEClient:
        client = SSEClient(team, round, ip=ip, user_agent=user_agent,
                           queue_size=self.queue_size, loop=_running_loop())
        with self._lock:
            self.clients[client.id] = client
        logger.info(f"Client connected: {client.id} ({team}/{round}) from {ip}")
        return client

    def disconnect(self, client_id: str) -> bool:
        with self._lock:
            client = self.clients.pop(client_id, None)
        if client is None:
            return False
        client.close()
        logger.info(f"Client disconnected: {client.id} ({client.team}/{client.round})")
        return True

    def _deliver(self, payload: Dict[str, Any], predicate: Callable[[SSEClient], bool]) -> int:
        sent = 0
        dead: List[str] = []
        with self._lock:
            targets = list(self.clients.values())
        for client in targets:
            if not predicate(client):
                continue
            try:
                client.send(payload)
                sent += 1
            except Exception as e:
                logger.error(f"Error sending to client {client.id}: {e}")
                dead.append(client.id)
        for client_id in dead:
            self.disconnect(client_id)
        return sent

    def send_team_update(self, team: str, round: str, payload: Dict[str, Any]) -> int:
        """Send to clients of ``team`` (or admin) listening to ``round`` (or all)."""
        sent = self._deliver(payload, lambda c: c.matches(team, round))
        logger.info(f"Sent update to {sent} clients for team {team}, round {round}")
        return sent

    def send_admin_update(self, team: str, round: str, payload: Dict[str, Any]) -> int:
        sent = self._deliver(
            payload, lambda c: c.team == WILDCARD_TEAM and c.matches(None, round)
        )
        logger.info(f"Sent admin-only update to {sent} clients for team {team}, round {round}")
        return sent

    def broadcast_round_status_update(self, round: str, status: str) -> int:
        payload = {"type": "round_status_updated", "round": round, "status": status, "timestamp": _now_iso()}
        sent = self._deliver(payload, lambda c: c.matches(None, round))
        logger.info(f"Sent round status update ({status}) to {sent} clients for round {round}")
        return sent

    def send_ping_to_all(self) -> int:
        return self._deliver({"type": "ping", "timestamp": _now_iso()}, lambda c: True)

    def cleanup_dead_connections(self, max_age_minutes: float = SSE_CONFIG["max_age_minutes"]) -> int:
        """Drop clients that are closed or older than ``max_age_minutes``."""
        cutoff = datetime.now(timezone.utc).timestamp() - max_age_minutes * 60
        with self._lock:
            stale = [
                c.id for c in self.clients.values()
                if c.closed or c.connected_at.timestamp() < cutoff
            ]
        for client_id in stale:
            self.disconnect(client_id)
        return len(stale)

    def get_connection_stats(self) -> Dict[str, Any]:
        with self._lock:
            clients = list(self.clients.values())
        by_team: Dict[str, int] = {}
        by_round: Dict[str, int] = {}
        for c in clients:
            by_team[c.team] = by_team.get(c.team, 0) + 1
            by_round[c.round] = by_round.get(c.round, 0) + 1
        return {
            "totalConnections": len(clients),
            "connectionsByTeam": by_team,
            "connectionsByRound": by_round,
            "activeSince": [c.describe() for c in clients],
        }

    def sweep(self, max_age_minutes: float = SSE_CONFIG["max_age_minutes"]) -> Dict[str, int]:
        removed = self.cleanup_dead_connections(max_age_minutes)
        if removed:
            logger.info(f"Cleaned up {removed} dead SSE connections")
        pinged = self.send_ping_to_all()
        stats = self.get_connection_stats()
        logger.info(
            f"SSE connections: {stats['totalConnections']} "
            f"by team={stats['connectionsByTeam']} by round={stats['connectionsByRound']}"
        )
        return {"removed": removed, "pinged": pinged}

    async def stream(self, client: SSEClient,
                     is_disconnected: Optional[Callable[[], Any]] = None,
                     heartbeat_seconds: Optional[float] = None,
                     timeout_seconds: Optional[float] = None) -> AsyncIterator[str]:
        """Yield SSE frames for ``client`` until it disconnects, is closed, or times out."""
        heartbeat = heartbeat_seconds or SSE_CONFIG["heartbeat_seconds"]
        timeout = timeout_seconds or SSE_CONFIG["connection_timeout_seconds"]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            yield format_event({
                "type": "connected",
                "message": "SSE connection established",
                "clientId": client.id,
                "team": client.team,
                "round": client.round,
            })
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    yield format_event({"type": "timeout", "message": "Connection timeout - reconnecting..."})
                    break
                try:
                    message = await asyncio.wait_for(client.queue.get(), timeout=min(heartbeat, remaining))
                except asyncio.TimeoutError:
                    if client.closed:
                        break
                    if is_disconnected is not None and await is_disconnected():
                        break
                    if loop.time() < deadline:
                        yield format_event({"type": "ping", "timestamp": _now_iso()})
                    continue
                if message is None:
                    break
                yield message
        finally:
            self.disconnect(client.id)


async def run_sweeper(registry: "SSERegistry", interval_seconds: float = SSE_CONFIG["sweep_interval_seconds"]) -> None:
    """Periodically prune stale clients and ping the rest. Runs until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            registry.sweep()
        except Exception as e:
            logger.error(f"SSE sweep failed: {e}")


# Global registry instance
_sse_registry: Optional[SSERegistry] = None


def get_sse_registry() -> SSERegistry:
    """Get the global SSE registry instance."""
    global _sse_registry
    if _sse_registry is None:
        _sse_registry = SSERegistry()
    return _sse_registry
