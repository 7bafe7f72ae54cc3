"""
DNS provider clients.

Providers are thin RPC wrappers: find, list, create and delete a record by
name and type. Every call is bounded by a timeout and never retried here;
retry policy belongs to the reconciler, which knows the call is part of a
larger swap.

Supported providers:
  - cloudflare  (Cloudflare v4 API, bearer token)
  - dry-run     (local JSON zone file for testing)
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .config import Settings
from .errors import ConfigError, ProviderError
from .utils import log, now_iso

# Cloudflare: "Record does not exist."
CF_RECORD_NOT_FOUND = 81044


@dataclass(frozen=True)
class DnsRecordRef:
    name: str
    type: str
    id: str

    def to_dict(self) -> Dict[str, str]:
        return {'name': self.name, 'type': self.type, 'id': self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DnsRecordRef":
        return cls(name=data['name'], type=data['type'], id=str(data['id']))


class DNSProvider:
    name = 'base'

    def list_records(self, name: str, record_type: str) -> List[DnsRecordRef]:
        raise NotImplementedError

    def create_record(self, name: str, record_type: str, content: str, ttl: int) -> str:
        raise NotImplementedError

    def delete_record(self, record_id: str) -> None:
        raise NotImplementedError

    def get_content(self, name: str, record_type: str) -> Optional[str]:
        raise NotImplementedError

    def find_record(self, name: str, record_type: str) -> Optional[str]:
        """Return the id of the record, the first one in provider order if there are several."""
        records = self.list_records(name, record_type)
        if not records:
            return None
        if len(records) > 1:
            ids = ', '.join(r.id for r in records)
            log(f"[{self.name}] {len(records)} {record_type} records for {name} ({ids}), using the first", "WARN")
        return records[0].id


class DryRunProvider(DNSProvider):
    """Keeps the zone in a local JSON file. Ids are assigned sequentially."""

    name = 'dry-run'

    def __init__(self, statefile: str):
        self.statefile = statefile

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.statefile, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return {'next_id': 1, 'records': []}
        except (OSError, ValueError) as e:
            raise ProviderError(None, f"Unreadable zone file {self.statefile}: {e}") from e

    def _save(self, zone: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.statefile)
        if directory:
            os.makedirs(directory, exist_ok=True)
        zone['updated_at'] = now_iso()
        try:
            with open(self.statefile, 'w') as f:
                json.dump(zone, f, indent=2)
        except OSError as e:
            raise ProviderError(None, f"Cannot write zone file {self.statefile}: {e}") from e

    def records(self) -> List[Dict[str, Any]]:
        return list(self._load()['records'])

    def list_records(self, name: str, record_type: str) -> List[DnsRecordRef]:
        return [
            DnsRecordRef(r['name'], r['type'], r['id'])
            for r in self._load()['records']
            if r['name'] == name and r['type'] == record_type
        ]

    def get_content(self, name: str, record_type: str) -> Optional[str]:
        for r in self._load()['records']:
            if r['name'] == name and r['type'] == record_type:
                return r['content']
        return None

    def create_record(self, name: str, record_type: str, content: str, ttl: int) -> str:
        zone = self._load()
        record_id = f"dry-{zone['next_id']}"
        zone['next_id'] += 1
        zone['records'].append({'id': record_id, 'name': name, 'type': record_type, 'content': content, 'ttl': ttl})
        self._save(zone)
        log(f"[dry-run] Created {record_type} {name} -> {content} (id={record_id})")
        return record_id

    def delete_record(self, record_id: str) -> None:
        zone = self._load()
        remaining = [r for r in zone['records'] if r['id'] != record_id]
        if len(remaining) == len(zone['records']):
            return
        zone['records'] = remaining
        self._save(zone)
        log(f"[dry-run] Deleted record {record_id}")


class CloudflareProvider(DNSProvider):
    name = 'cloudflare'

    def __init__(self, api_token: str, zone_id: str, timeout: int = 10,
                 base_url: str = "https://api.cloudflare.com/client/v4"):
        self.session = requests.Session()
        self.session.headers.update({'Authorization': f'Bearer {api_token}', 'Content-Type': 'application/json'})
        self.base_url = base_url
        self.zone_id = zone_id
        self.timeout = timeout

    @property
    def records_url(self) -> str:
        return f"{self.base_url}/zones/{self.zone_id}/dns_records"

    def _request(self, method: str, url: str, **kwargs) -> Any:
        """Perform one API call and return its `result` payload."""
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(None, f"{method} {url} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(resp.status_code, f"Non-JSON response ({resp.status_code}): {resp.text[:200]}")

        if not isinstance(data, dict) or data.get('success') is not True:
            errors = data.get('errors') if isinstance(data, dict) else None
            errors = errors or [{}]
            code = errors[0].get('code', resp.status_code)
            message = '; '.join(e.get('message', 'Unknown error') for e in errors)
            raise ProviderError(code, message)

        return data.get('result')

    def list_records(self, name: str, record_type: str) -> List[DnsRecordRef]:
        params = {'type': record_type, 'name': name, 'per_page': 100}
        result = self._request('GET', self.records_url, params=params) or []
        return [DnsRecordRef(r['name'], r['type'], r['id']) for r in result]

    def get_content(self, name: str, record_type: str) -> Optional[str]:
        params = {'type': record_type, 'name': name, 'per_page': 100}
        result = self._request('GET', self.records_url, params=params) or []
        return result[0]['content'] if result else None

    def create_record(self, name: str, record_type: str, content: str, ttl: int) -> str:
        payload = {'type': record_type, 'name': name, 'content': content, 'ttl': ttl, 'proxied': False}
        result = self._request('POST', self.records_url, json=payload)
        if not result or 'id' not in result:
            raise ProviderError(None, f"Create {record_type} {name} returned no record id")
        log(f"[cloudflare] Created {record_type} {name} -> {content} (id={result['id']})")
        return result['id']

    def delete_record(self, record_id: str) -> None:
        try:
            self._request('DELETE', f"{self.records_url}/{record_id}")
        except ProviderError as e:
            if e.code in (404, CF_RECORD_NOT_FOUND):
                return
            raise
        log(f"[cloudflare] Deleted record {record_id}")


def build_provider(settings: Settings) -> DNSProvider:
    if settings.provider == 'cloudflare':
        return CloudflareProvider(settings.cloudflare_api_token, settings.cloudflare_zone_id,
                                  timeout=settings.provider_timeout)
    if settings.provider == 'dry-run':
        return DryRunProvider(settings.dryrun_statefile)
    raise ConfigError(f"Unknown provider: {settings.provider}")
