"""
Record reconciliation.

Makes the provider's records match the intended target. Providers lack an
atomic upsert for a CNAME swap, so point_alias_to deletes every alias
CNAME and creates a new one. If the create fails after the delete, the
alias has no record until the next attempt; callers leave state unchanged
so the next tick retries the full swap (the delete is then a no-op).
"""

import time
from typing import Callable, Dict, List, Optional

from .config import FailoverConfig, is_hostname, is_ipv4
from .errors import ConfigError, OperationResult, ProviderError
from .providers import DNSProvider, DnsRecordRef
from .utils import log


def validate_content(record_type: str, content: str) -> None:
    if record_type == 'A':
        if not is_ipv4(content):
            raise ConfigError(f"A record requires an IPv4 address, got: {content!r}")
    elif record_type == 'CNAME':
        if not is_hostname(content):
            raise ConfigError(f"CNAME record requires a hostname, got: {content!r}")
    else:
        raise ConfigError(f"Unsupported record type: {record_type}")


class Reconciler:
    def __init__(self, provider: DNSProvider, ttl: int = 60, attempts: int = 2, backoff: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.provider = provider
        self.ttl = ttl
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self._sleep = sleep

    def _create_with_retry(self, name: str, record_type: str, content: str, ttl: int) -> str:
        last_error: Optional[ProviderError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return self.provider.create_record(name, record_type, content, ttl)
            except ProviderError as e:
                last_error = e
                log(f"Create {record_type} {name} failed (attempt {attempt}/{self.attempts}): {e}", "WARN")
                if attempt < self.attempts:
                    self._sleep(self.backoff)
        raise last_error

    def _clear(self, name: str, record_type: str) -> int:
        records = self.provider.list_records(name, record_type)
        for ref in records:
            self.provider.delete_record(ref.id)
        return len(records)

    def point_alias_to(self, alias: str, target: str, ttl: Optional[int] = None) -> OperationResult:
        """Swap the alias CNAME to target. Success only if the new record was created."""
        try:
            validate_content('CNAME', target)
        except ConfigError as e:
            return OperationResult.fatal(str(e))

        try:
            removed = self._clear(alias, 'CNAME')
            if removed > 1:
                log(f"Removed {removed} duplicate CNAME records for {alias}", "WARN")
        except ProviderError as e:
            log(f"Could not remove old CNAME for {alias}: {e}", "ERROR")
            return OperationResult.retryable(f"delete old CNAME failed: {e}")

        try:
            record_id = self._create_with_retry(alias, 'CNAME', target, ttl or self.ttl)
        except ProviderError as e:
            log(f"Alias {alias} has NO record: create CNAME -> {target} failed: {e}", "ERROR")
            return OperationResult.retryable(f"create CNAME failed: {e}")

        log(f"Alias {alias} now points to {target}")
        return OperationResult.success(f"{alias} -> {target}",
                                       record=DnsRecordRef(alias, 'CNAME', record_id).to_dict())

    def create_initial_topology(self, cname: str, primary_host: str, primary_ip: str,
                                backup_host: str, backup_ip: str) -> Dict[str, DnsRecordRef]:
        """
        Create both A records, then the alias CNAME pointing at the primary.

        On any failure every record created by this call is deleted again and
        the ProviderError is re-raised. Existing records with the managed
        names are cleared first so no duplicates accumulate.
        """
        plan = [
            ('primary', primary_host, 'A', primary_ip),
            ('backup', backup_host, 'A', backup_ip),
            ('alias', cname, 'CNAME', primary_host),
        ]
        for _, name, record_type, content in plan:
            validate_content(record_type, content)

        for _, name, record_type, _content in plan:
            removed = self._clear(name, record_type)
            if removed:
                log(f"Removed {removed} pre-existing {record_type} record(s) for {name}", "WARN")

        created: List[DnsRecordRef] = []
        try:
            for _, name, record_type, content in plan:
                record_id = self.provider.create_record(name, record_type, content, self.ttl)
                created.append(DnsRecordRef(name, record_type, record_id))
        except ProviderError as e:
            log(f"Topology creation failed: {e}. Rolling back {len(created)} record(s)", "ERROR")
            self._rollback(created)
            raise

        return {key: ref for (key, _, _, _), ref in zip(plan, created)}

    def _rollback(self, created: List[DnsRecordRef]) -> None:
        for ref in reversed(created):
            try:
                self.provider.delete_record(ref.id)
                log(f"Rolled back {ref.type} {ref.name} (id={ref.id})")
            except ProviderError as e:
                log(f"Rollback of {ref.type} {ref.name} (id={ref.id}) failed: {e}", "ERROR")

    def delete_topology(self, config: FailoverConfig) -> List[str]:
        """Delete every managed record. Returns the names that could not be removed."""
        failed = []
        for name, record_type in ((config.alias, 'CNAME'),
                                  (config.primary_record, 'A'),
                                  (config.backup_record, 'A')):
            try:
                removed = self._clear(name, record_type)
                log(f"Deleted {removed} {record_type} record(s) for {name}")
            except ProviderError as e:
                log(f"Could not delete {record_type} {name}: {e}", "ERROR")
                failed.append(name)
        return failed
