"""
Port Allocator.

Hands out ports from fixed, non-overlapping ranges per service type.
A port is allocatable when the ledger has no reservation for it and the
OS lets us bind it right now. The bind probe is best-effort: anything
outside this process can still take the port before the tenant's own
service starts.
"""

import asyncio
import logging
import socket
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from tenantbase.config import SERVICE_TYPES
from tenantbase.exceptions import ExhaustedRangeError
from tenantbase.schemas.project import PortAssignment, PortUsageStats
from tenantbase.services.registry import PortAlreadyReservedError, PortLedger

logger = logging.getLogger(__name__)


def validate_ranges(ranges: Mapping[str, Tuple[int, int]]) -> Dict[str, Tuple[int, int]]:
    """Reject empty, out-of-bounds or overlapping ranges."""
    checked: Dict[str, Tuple[int, int]] = {}
    for service_type, (start, end) in ranges.items():
        if not (1 <= start <= end <= 65535):
            raise ValueError(f"Invalid port range for {service_type}: {start}-{end}")
        checked[service_type] = (start, end)

    spans = sorted((start, end, name) for name, (start, end) in checked.items())
    for (_, prev_end, prev_name), (start, _, name) in zip(spans, spans[1:]):
        if start <= prev_end:
            raise ValueError(f"Port ranges for {prev_name} and {name} overlap")
    return checked


class PortAllocator:
    """
    Allocates and releases ports against a PortLedger.

    Every ledger read-modify-write runs under one asyncio.Lock, which
    makes scan-then-reserve atomic for all allocators sharing this
    instance.
    """

    def __init__(
        self,
        ledger: PortLedger,
        ranges: Mapping[str, Tuple[int, int]],
        probe_host: str = "0.0.0.0",
        service_types: Iterable[str] = SERVICE_TYPES,
    ):
        self._ledger = ledger
        self._ranges = validate_ranges(ranges)
        self._probe_host = probe_host
        self._service_types = tuple(service_types)
        self._lock = asyncio.Lock()

        missing = [s for s in self._service_types if s not in self._ranges]
        if missing:
            raise ValueError(f"No port range configured for: {', '.join(missing)}")

    @property
    def service_types(self) -> Tuple[str, ...]:
        return self._service_types

    def get_range(self, service_type: str) -> Tuple[int, int]:
        try:
            return self._ranges[service_type]
        except KeyError:
            raise ValueError(f"Unknown service type: {service_type}") from None

    def is_port_bindable(self, port: int) -> bool:
        """Try to bind a listening socket on the port and release it immediately."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self._probe_host, port))
                sock.listen(1)
            except OSError:
                return False
        return True

    async def _find_available_port(self, service_type: str) -> int:
        start, end = self.get_range(service_type)
        reserved = await self._ledger.reserved(service_type)

        for port in range(start, end + 1):
            if port in reserved:
                continue
            if self.is_port_bindable(port):
                return port

        raise ExhaustedRangeError(service_type, start, end)

    async def _reserve(self, service_type: str, project_id: str) -> int:
        # Caller holds self._lock
        while True:
            port = await self._find_available_port(service_type)
            try:
                await self._ledger.reserve(
                    PortAssignment(service_type=service_type, port=port, project_id=project_id)
                )
                return port
            except PortAlreadyReservedError:
                # Another process sharing the ledger got there first; rescan
                logger.warning("Port %s:%s taken concurrently, rescanning", service_type, port)

    async def allocate(self, service_type: str, project_id: str) -> int:
        """Reserve one port of the given service type for a project."""
        async with self._lock:
            port = await self._reserve(service_type, project_id)
        logger.info("Allocated %s port %s for project %s", service_type, port, project_id)
        return port

    async def allocate_all(self, project_id: str) -> Dict[str, int]:
        """
        Reserve one port per service type, all or nothing.

        If any allocation fails, the ports reserved so far by this call are
        released before the error propagates.
        """
        ports: Dict[str, int] = {}
        async with self._lock:
            try:
                for service_type in self._service_types:
                    ports[service_type] = await self._reserve(service_type, project_id)
            except BaseException:
                if ports:
                    logger.warning(
                        "Port allocation for project %s failed, releasing %s", project_id, ports
                    )
                    for service_type, port in ports.items():
                        await self._ledger.release_port(service_type, port)
                raise

        logger.info("Allocated ports for project %s: %s", project_id, ports)
        return ports

    async def release(self, project_id: str) -> List[PortAssignment]:
        """Release every reservation held by a project. Idempotent."""
        async with self._lock:
            released = await self._ledger.release_project(project_id)

        if released:
            logger.info(
                "Released %d port(s) for project %s: %s",
                len(released),
                project_id,
                ", ".join(f"{p.service_type}:{p.port}" for p in released),
            )
        else:
            logger.debug("No active ports for project %s", project_id)
        return released

    async def get_usage_stats(self) -> Dict[str, PortUsageStats]:
        used_ports = await self._ledger.all()
        stats: Dict[str, PortUsageStats] = {}

        for service_type, (start, end) in self._ranges.items():
            used = sum(1 for p in used_ports if p.service_type == service_type)
            total = end - start + 1
            stats[service_type] = PortUsageStats(
                used=used,
                available=total - used,
                total=total,
                usage_percentage=round(used / total * 100),
                range=f"{start}-{end}",
            )
        return stats

    async def get_project_ports(self, project_id: str) -> List[PortAssignment]:
        return await self._ledger.for_project(project_id)

    async def list_used_ports(self, service_type: Optional[str] = None) -> List[PortAssignment]:
        used = await self._ledger.all()
        if service_type is not None:
            used = [p for p in used if p.service_type == service_type]
        return used
