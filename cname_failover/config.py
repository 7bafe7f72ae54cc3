"""
Configuration for cname-failover.

Configuration sources (in priority order):
  1. HashiCorp Vault (if configured)
  2. Environment variables
  3. .env file in the working directory

Settings are read once per process. The FailoverConfig captured by `setup`
is persisted in the state document and is authoritative afterwards.
"""

import ipaddress
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import requests
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError
from .utils import log

# -----------------------------
# Vault Integration
# -----------------------------

K8S_JWT_PATH = '/var/run/secrets/kubernetes.io/serviceaccount/token'


def _vault_login(client, method: str) -> bool:
    """Authenticate client with the configured method. False means skip Vault."""
    if method == 'token':
        client.token = os.getenv('VAULT_TOKEN')
        missing = [] if client.token else ['VAULT_TOKEN']
    elif method == 'approle':
        creds = {'role_id': os.getenv('VAULT_ROLE_ID'), 'secret_id': os.getenv('VAULT_SECRET_ID')}
        missing = [f"VAULT_{k.upper()}" for k, v in creds.items() if not v]
        if not missing:
            client.auth.approle.login(**creds)
    elif method == 'kubernetes':
        role = os.getenv('VAULT_K8S_ROLE')
        missing = [] if role else ['VAULT_K8S_ROLE']
        if role:
            with open(os.getenv('VAULT_K8S_JWT_PATH', K8S_JWT_PATH)) as f:
                client.auth.kubernetes.login(role=role, jwt=f.read().strip())
    else:
        log(f"Unknown VAULT_AUTH_METHOD: {method}", "WARN")
        return False

    if missing:
        log(f"VAULT_AUTH_METHOD={method} but {'/'.join(missing)} not set", "WARN")
        return False
    return True


def load_from_vault() -> Dict[str, Any]:
    """
    Read settings from a Vault KV secret (VAULT_MOUNT/VAULT_KEY).

    Keys are the lower-case variable names (cloudflare_api_token, primary_ip,
    ...). Returns {} when VAULT_ADDR is unset or Vault cannot be used, so the
    environment takes over.
    """
    vault_addr = os.getenv('VAULT_ADDR')
    if not vault_addr:
        return {}

    import hvac
    from hvac.exceptions import VaultError

    mount = os.getenv('VAULT_MOUNT', 'secret')
    path = os.getenv('VAULT_KEY', 'cname-failover')
    try:
        client = hvac.Client(url=vault_addr)
        if not _vault_login(client, os.getenv('VAULT_AUTH_METHOD', 'token').lower()):
            return {}
        if not client.is_authenticated():
            log("Vault authentication failed", "WARN")
            return {}

        try:
            data = client.secrets.kv.v2.read_secret_version(path=path, mount_point=mount)['data']['data']
        except VaultError:
            data = client.secrets.kv.v1.read_secret(path=path, mount_point=mount)['data']
    except (VaultError, requests.RequestException, OSError, KeyError) as e:
        log(f"Vault error reading {mount}/{path}: {e}. Falling back to env.", "WARN")
        return {}

    settings = {str(k).lower(): v for k, v in data.items()}
    log(f"Loaded {len(settings)} settings from Vault ({mount}/{path})")
    return settings


def get_config_value(key: str, vault_data: Dict[str, Any], default: Any = None) -> Any:
    """
    Vault first, then the environment, then default.

    Vault values arrive as JSON types; they are coerced to the string form the
    environment would carry (lists comma-joined, booleans lower-case) so both
    sources parse the same way. Empty values count as unset.
    """
    value = vault_data.get(key.lower())
    if value is None or value == '':
        value = os.getenv(key.upper())
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (list, tuple)):
        return ','.join(str(v) for v in value)
    return str(value)

# -----------------------------
# Record names
# -----------------------------

VALID_PROVIDERS = ['cloudflare', 'dry-run']
VALID_PROBE_METHODS = ['icmp', 'http', 'tcp']


def qualify(name: str, domain: str) -> str:
    """Turn a bare label into an FQDN under domain; FQDNs pass through."""
    name = name.rstrip('.')
    if not domain:
        return name
    domain = domain.rstrip('.')
    if name == domain or name.endswith(f".{domain}"):
        return name
    return f"{name}.{domain}"


def is_ipv4(value: str) -> bool:
    try:
        return ipaddress.ip_address(value).version == 4
    except ValueError:
        return False


def is_hostname(value: str) -> bool:
    if not value or len(value) > 253 or is_ipv4(value):
        return False
    labels = value.rstrip('.').split('.')
    for label in labels:
        if not label or len(label) > 63:
            return False
        if label.startswith('-') or label.endswith('-'):
            return False
        if not all(c.isalnum() or c in '-_' for c in label):
            return False
    return True

# -----------------------------
# Failover topology
# -----------------------------

@dataclass(frozen=True)
class FailoverConfig:
    """The managed topology. Captured once by setup, never mutated."""

    alias: str
    primary_record: str
    backup_record: str
    primary_ip: str
    backup_ip: str
    check_interval: int = 30
    failure_threshold: int = 3
    recovery_threshold: int = 3
    ttl: int = 60

    def record_for(self, side: str) -> str:
        return self.primary_record if side == 'primary' else self.backup_record

    def ip_for(self, side: str) -> str:
        return self.primary_ip if side == 'primary' else self.backup_ip

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailoverConfig":
        try:
            return cls(
                alias=data['alias'],
                primary_record=data['primary_record'],
                backup_record=data['backup_record'],
                primary_ip=data['primary_ip'],
                backup_ip=data['backup_ip'],
                check_interval=int(data.get('check_interval', 30)),
                failure_threshold=int(data.get('failure_threshold', 3)),
                recovery_threshold=int(data.get('recovery_threshold', 3)),
                ttl=int(data.get('ttl', 60)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid failover config: {e}") from e

    def validate(self):
        errors = []
        for name in ('alias', 'primary_record', 'backup_record'):
            if not is_hostname(getattr(self, name)):
                errors.append(f"{name} is not a valid hostname: {getattr(self, name)!r}")
        if self.primary_record == self.backup_record:
            errors.append("primary_record and backup_record must differ")
        if self.alias in (self.primary_record, self.backup_record):
            errors.append("alias must differ from the host records")
        for name in ('primary_ip', 'backup_ip'):
            if not is_ipv4(getattr(self, name)):
                errors.append(f"{name} is not an IPv4 address: {getattr(self, name)!r}")
        if self.check_interval < 1:
            errors.append(f"check_interval must be >= 1 (got {self.check_interval})")
        if self.failure_threshold < 1:
            errors.append(f"failure_threshold must be >= 1 (got {self.failure_threshold})")
        if self.recovery_threshold < 1:
            errors.append(f"recovery_threshold must be >= 1 (got {self.recovery_threshold})")
        if errors:
            raise ConfigError(f"Configuration errors: {'; '.join(errors)}")

# -----------------------------
# Runtime settings
# -----------------------------

@dataclass
class Settings:
    # Core settings
    provider: str
    base_domain: str
    alias_name: str
    primary_record: str
    backup_record: str
    primary_ip: str
    backup_ip: str
    check_interval: int
    failure_threshold: int
    recovery_threshold: int
    dns_ttl: int
    state_dir: str

    # Provider calls
    provider_timeout: int = 10
    reconcile_attempts: int = 2
    reconcile_backoff: float = 1.0

    # Health probes
    probe_methods: List[str] = field(default_factory=lambda: list(VALID_PROBE_METHODS))
    probe_port: int = 80

    # Cloudflare
    cloudflare_api_token: Optional[str] = None
    cloudflare_zone_id: Optional[str] = None

    # Dry-run
    dryrun_statefile: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None):
        """Load settings from Vault, environment variables or a .env file."""
        # .env is looked up from the working directory upwards
        load_dotenv(dotenv_path or find_dotenv(usecwd=True))
        vault_data = load_from_vault()

        def get(key: str, default: Any = None) -> Any:
            return get_config_value(key, vault_data, default)

        def get_int(key: str, default: int = 0) -> int:
            value = get(key, default)
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{key} must be an integer (got {value!r})")

        def get_float(key: str, default: float = 0.0) -> float:
            value = get(key, default)
            try:
                return float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{key} must be a number (got {value!r})")

        base_domain = get('BASE_DOMAIN', '')
        alias_name = get('ALIAS_NAME', 'www')
        alias_label = alias_name.split('.')[0]
        state_dir = get('STATE_DIR', './state')
        methods = [m.strip().lower() for m in str(get('PROBE_METHODS', 'icmp,http,tcp')).split(',') if m.strip()]

        return cls(
            provider=get('DNS_PROVIDER', 'cloudflare'),
            base_domain=base_domain,
            alias_name=alias_name,
            primary_record=get('PRIMARY_RECORD', f"{alias_label}-primary"),
            backup_record=get('BACKUP_RECORD', f"{alias_label}-backup"),
            primary_ip=get('PRIMARY_IP', ''),
            backup_ip=get('BACKUP_IP', ''),
            check_interval=get_int('CHECK_INTERVAL', 30),
            failure_threshold=get_int('FAILURE_THRESHOLD', 3),
            recovery_threshold=get_int('RECOVERY_THRESHOLD', 3),
            dns_ttl=get_int('DNS_TTL', 60),
            state_dir=state_dir,
            provider_timeout=get_int('PROVIDER_TIMEOUT', 10),
            reconcile_attempts=get_int('RECONCILE_ATTEMPTS', 2),
            reconcile_backoff=get_float('RECONCILE_BACKOFF', 1.0),
            probe_methods=methods,
            probe_port=get_int('PROBE_PORT', 80),
            cloudflare_api_token=get('CLOUDFLARE_API_TOKEN'),
            cloudflare_zone_id=get('CLOUDFLARE_ZONE_ID'),
            dryrun_statefile=get('DRYRUN_STATEFILE', os.path.join(state_dir, 'zone.json')),
        )

    @property
    def state_file(self) -> str:
        return os.path.join(self.state_dir, 'state.json')

    @property
    def pid_file(self) -> str:
        return os.path.join(self.state_dir, 'monitor.pid')

    @property
    def log_file(self) -> str:
        return os.path.join(self.state_dir, 'monitor.log')

    def failover_config(self) -> FailoverConfig:
        """Topology described by these settings, with names qualified under the base domain."""
        return FailoverConfig(
            alias=qualify(self.alias_name, self.base_domain),
            primary_record=qualify(self.primary_record, self.base_domain),
            backup_record=qualify(self.backup_record, self.base_domain),
            primary_ip=self.primary_ip,
            backup_ip=self.backup_ip,
            check_interval=self.check_interval,
            failure_threshold=self.failure_threshold,
            recovery_threshold=self.recovery_threshold,
            ttl=self.dns_ttl,
        )

    def validate(self):
        """Validate provider and runtime settings (the topology is checked by setup)."""
        errors = []

        if self.provider not in VALID_PROVIDERS:
            errors.append(f"Invalid DNS_PROVIDER: {self.provider}. Valid: {', '.join(VALID_PROVIDERS)}")

        if self.provider == 'cloudflare':
            if not self.cloudflare_api_token:
                errors.append("CLOUDFLARE_API_TOKEN required")
            if not self.cloudflare_zone_id:
                errors.append("CLOUDFLARE_ZONE_ID required")
            if not self.base_domain:
                errors.append("BASE_DOMAIN required")

        unknown = [m for m in self.probe_methods if m not in VALID_PROBE_METHODS]
        if unknown:
            errors.append(f"Invalid PROBE_METHODS: {', '.join(unknown)}. Valid: {', '.join(VALID_PROBE_METHODS)}")

        if self.provider_timeout < 1:
            errors.append(f"PROVIDER_TIMEOUT must be >= 1 (got {self.provider_timeout})")
        if self.reconcile_attempts < 1:
            errors.append(f"RECONCILE_ATTEMPTS must be >= 1 (got {self.reconcile_attempts})")

        if errors:
            raise ConfigError(f"Configuration errors: {'; '.join(errors)}")
