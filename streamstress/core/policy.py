"""Declarative stream policy: load once, overlay at runtime, resolve per stream type.

The document follows the secure-streams JSON layout: named retry strategies,
named certificates, trust stores built from them, and the ``"s"`` list of
stream types keyed by name.
"""

from __future__ import annotations

import base64
import copy
import json
import random
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from streamstress.core.errors import PolicyError

CAPTIVE_PORTAL_DETECT = "captive_portal_detect"

_NAMED_LISTS = ("retry", "certs", "s")


@dataclass(frozen=True)
class RetryBackoff:
    backoff_ms: tuple[int, ...] = (1000, 2000, 3000, 5000, 10000)
    conceal: int = 5
    jitter_pc: int = 20

    def delay_ms(self, index: int, rng: random.Random | None = None) -> int:
        if not self.backoff_ms:
            return 0
        base = self.backoff_ms[min(max(index, 0), len(self.backoff_ms) - 1)]
        if self.jitter_pc <= 0:
            return base
        jitter = (rng or random).randint(0, base * self.jitter_pc // 100)
        return base + jitter


@dataclass(frozen=True)
class StreamTypePolicy:
    name: str
    endpoint: str
    port: int
    protocol: str = "h1"
    http_method: str = "GET"
    http_url: str = ""
    tls: bool = False
    tls_trust_store: str | None = None
    retry: str = "default"
    metadata: dict[str, str] = field(default_factory=dict)
    http_expect: int | None = None
    http_fail_redirect: bool = False
    http_resp_map: dict[int, int] = field(default_factory=dict)

    @property
    def scheme(self) -> str:
        return "https" if self.tls else "http"

    def header_for(self, metadata_name: str) -> str | None:
        header = self.metadata.get(metadata_name)
        if header is None:
            return None
        return header.rstrip(":").strip() or None


def _entry_name(entry: dict[str, Any]) -> str:
    if "name" in entry:
        return str(entry["name"])
    if len(entry) != 1:
        raise PolicyError(f"named policy entry must have exactly one key: {sorted(entry)}")
    return next(iter(entry))


def _merge_named(base: list[dict[str, Any]], overlay: list[dict[str, Any]], by_name_field: bool = False) -> None:
    index = {_entry_name(entry): entry for entry in base}
    for incoming in overlay:
        if not isinstance(incoming, dict):
            raise PolicyError(f"policy list entries must be objects, got {type(incoming).__name__}")
        name = _entry_name(incoming)
        existing = index.get(name)
        if existing is None:
            copied = copy.deepcopy(incoming)
            base.append(copied)
            index[name] = copied
            continue
        if by_name_field:
            existing.update(copy.deepcopy(incoming))
            continue
        body = incoming[name]
        if isinstance(body, dict) and isinstance(existing.get(name), dict):
            existing[name].update(copy.deepcopy(body))
        else:
            existing[name] = copy.deepcopy(body)


class PolicyDocument:
    def __init__(self, raw: dict[str, Any]) -> None:
        if not isinstance(raw, dict):
            raise PolicyError("policy document must be a JSON object")
        self._raw = copy.deepcopy(raw)
        self._overlay_count = 0

    @classmethod
    def from_json(cls, text: str) -> "PolicyDocument":
        try:
            return cls(json.loads(text))
        except json.JSONDecodeError as exc:
            raise PolicyError(f"policy is not valid JSON: {exc}") from exc

    @property
    def overlay_count(self) -> int:
        return self._overlay_count

    def as_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._raw)

    def stream_type_names(self) -> list[str]:
        return [_entry_name(entry) for entry in self._raw.get("s", [])]

    def overlay(self, fragment: str | dict[str, Any]) -> None:
        if isinstance(fragment, str):
            try:
                fragment = json.loads(fragment)
            except json.JSONDecodeError as exc:
                raise PolicyError(f"policy overlay is not valid JSON: {exc}") from exc
        if not isinstance(fragment, dict):
            raise PolicyError("policy overlay must be a JSON object")

        for key, value in fragment.items():
            if key in _NAMED_LISTS or key == "trust_stores":
                if not isinstance(value, list):
                    raise PolicyError(f"policy key {key!r} must be a list")
                _merge_named(self._raw.setdefault(key, []), value, by_name_field=key == "trust_stores")
            else:
                self._raw[key] = copy.deepcopy(value)
        self._overlay_count += 1

    def _named(self, key: str, name: str) -> dict[str, Any] | None:
        for entry in self._raw.get(key, []):
            if _entry_name(entry) == name:
                return entry
        return None

    def stream_type(self, name: str) -> StreamTypePolicy:
        entry = self._named("s", name)
        if entry is None:
            raise PolicyError(f"unknown stream type {name!r}")
        body = entry[name]
        try:
            metadata: dict[str, str] = {}
            for item in body.get("metadata", []):
                metadata.update({str(k): str(v) for k, v in item.items()})
            resp_map: dict[int, int] = {}
            for item in body.get("http_resp_map", []):
                resp_map.update({int(k): int(v) for k, v in item.items()})
            return StreamTypePolicy(
                name=name,
                endpoint=str(body["endpoint"]),
                port=int(body.get("port", 443 if body.get("tls") else 80)),
                protocol=str(body.get("protocol", "h1")),
                http_method=str(body.get("http_method", "GET")),
                http_url=str(body.get("http_url", "")),
                tls=bool(body.get("tls", False)),
                tls_trust_store=body.get("tls_trust_store"),
                retry=str(body.get("retry", "default")),
                metadata=metadata,
                http_expect=int(body["http_expect"]) if "http_expect" in body else None,
                http_fail_redirect=bool(body.get("http_fail_redirect", False)),
                http_resp_map=resp_map,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PolicyError(f"stream type {name!r} is malformed: {exc}") from exc

    def retry_backoff(self, name: str) -> RetryBackoff:
        entry = self._named("retry", name)
        if entry is None:
            return RetryBackoff()
        body = entry[name]
        return RetryBackoff(
            backoff_ms=tuple(int(v) for v in body.get("backoff", ())),
            conceal=max(1, int(body.get("conceal", 5))),
            jitter_pc=int(body.get("jitterpc", 0)),
        )

    def trust_store_der(self, name: str) -> bytes:
        for store in self._raw.get("trust_stores", []):
            if store.get("name") != name:
                continue
            chunks = []
            for cert_name in store.get("stack", []):
                cert = self._named("certs", cert_name)
                if cert is None:
                    raise PolicyError(f"trust store {name!r} references unknown cert {cert_name!r}")
                chunks.append(base64.b64decode(cert[cert_name]))
            return b"".join(chunks)
        raise PolicyError(f"unknown trust store {name!r}")


def load_policy(path: str | Path | None = None) -> PolicyDocument:
    if path is None:
        text = resources.files("streamstress.core").joinpath("default_policy.json").read_text(encoding="utf-8")
    else:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise PolicyError(f"cannot read policy {path}: {exc}") from exc
    return PolicyDocument.from_json(text)
