"""
Layered health probe.

Tries ICMP echo, then HTTP GET, then a TCP connect, stopping at the first
success. Each method is bounded by its own timeout. probe() never raises:
anything inconclusive, including having no usable method, is UNHEALTHY.
"""

import shutil
import socket
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import requests

from .errors import ProbeInconclusive
from .utils import log

ICMP_TIMEOUT = 1
HTTP_TIMEOUT = 2
TCP_TIMEOUT = 1


class Health(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class ProbeReport:
    address: str
    health: Health
    method: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {'address': self.address, 'health': self.health.value, 'method': self.method, 'errors': dict(self.errors)}

# -----------------------------
# Probe methods
# -----------------------------

def check_icmp(host: str, timeout: int = ICMP_TIMEOUT) -> None:
    ping = shutil.which('ping')
    if ping is None:
        raise ProbeInconclusive("ping not available")
    try:
        result = subprocess.run([ping, '-c', '1', '-W', str(timeout), host],
                                capture_output=True, text=True, timeout=timeout + 1)
    except (subprocess.TimeoutExpired, OSError) as e:
        raise ProbeInconclusive(f"ping failed: {e}") from e
    if result.returncode != 0:
        raise ProbeInconclusive(f"no echo reply (exit {result.returncode})")


def check_http(host: str, port: int = 80, timeout: int = HTTP_TIMEOUT) -> None:
    """
    GET / and accept any status below 500.

    Only the status line and headers are read; the body is never downloaded.
    Connect and each read are bounded by timeout, and a response that took
    longer than timeout overall counts as a failure.
    """
    url = f"http://{host}/" if port == 80 else f"http://{host}:{port}/"
    started = time.monotonic()
    try:
        resp = requests.get(url, timeout=(timeout, timeout), stream=True, allow_redirects=False,
                            headers={'User-Agent': 'cname-failover'})
    except requests.RequestException as e:
        raise ProbeInconclusive(f"GET {url} failed: {e}") from e
    try:
        elapsed = time.monotonic() - started
        status = resp.status_code
    finally:
        resp.close()
    if elapsed > timeout:
        raise ProbeInconclusive(f"GET {url} took {elapsed:.1f}s (limit {timeout}s)")
    if status >= 500:
        raise ProbeInconclusive(f"GET {url} returned {status}")


def check_tcp(host: str, port: int = 80, timeout: int = TCP_TIMEOUT) -> None:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return
    except OSError as e:
        raise ProbeInconclusive(f"connect {host}:{port} failed: {e}") from e


class HealthProber:
    def __init__(self, methods: Sequence[str] = ('icmp', 'http', 'tcp'), port: int = 80):
        self.methods = list(methods)
        self.port = port

    def _method(self, name: str) -> Optional[Callable[[str], None]]:
        if name == 'icmp':
            if shutil.which('ping') is None:
                return None
            return check_icmp
        if name == 'http':
            return lambda host: check_http(host, self.port)
        if name == 'tcp':
            return lambda host: check_tcp(host, self.port)
        return None

    def probe_detailed(self, address: str) -> ProbeReport:
        errors: Dict[str, str] = {}
        usable: List[str] = []
        for name in self.methods:
            check = self._method(name)
            if check is None:
                continue
            usable.append(name)
            try:
                check(address)
                return ProbeReport(address, Health.HEALTHY, method=name, errors=errors)
            except ProbeInconclusive as e:
                errors[name] = str(e)
            except Exception as e:
                errors[name] = f"unexpected error: {e}"

        if not usable:
            errors['all'] = "no usable probe method"
            log(f"No usable probe method for {address}, treating as unhealthy", "WARN")
        return ProbeReport(address, Health.UNHEALTHY, errors=errors)

    def probe(self, address: str) -> Health:
        return self.probe_detailed(address).health
