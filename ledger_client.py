"""
Ledger-indexer and broadcast client for BSV (WhatsOnChain, GorillaPool, TAAL).

Blocking ``requests`` calls with per-call timeouts.  Lookups raise
``ProviderError`` naming the service that failed; ``broadcast`` walks the
endpoints in order and raises ``BroadcastError`` carrying every endpoint's
failure reason when none accepts the transaction.

Dependencies:
    pip install requests
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests

from bitcoin_protocol import Utxo, hash256
from vault_errors import BroadcastError, ProviderError, ValidationError

log = logging.getLogger("quantum_vault.ledger")
log.addHandler(logging.NullHandler())


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class LedgerConfig:
    """Endpoints and timeouts; ``from_env`` reads overrides from the environment."""
    woc_base: str = "https://api.whatsonchain.com/v1/bsv/main"
    taal_url: str = "https://api.taal.com/api/v1/broadcast"
    taal_keys: List[str] = field(default_factory=list)
    gorilla_url: str = "https://mapi.gorillapool.io/mapi/tx"
    api_timeout: float = 45.0     # seconds
    price_timeout: float = 5.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        keys = [
            k.strip() for k in env.get("TAAL_API_KEYS", "").split(",")
            if k.strip()
        ]
        try:
            timeout = float(env.get("QV_API_TIMEOUT", defaults.api_timeout))
        except ValueError as exc:
            raise ValidationError(
                f"QV_API_TIMEOUT must be a number: {env.get('QV_API_TIMEOUT')!r}"
            ) from exc
        return cls(
            woc_base=env.get("QV_WOC_BASE", defaults.woc_base).rstrip("/"),
            taal_url=env.get("QV_TAAL_URL", defaults.taal_url),
            taal_keys=keys,
            gorilla_url=env.get("QV_GORILLA_URL", defaults.gorilla_url),
            api_timeout=timeout,
            price_timeout=defaults.price_timeout,
        )


@dataclass(frozen=True)
class BroadcastResult:
    txid: str
    via: str

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "txid": self.txid, "via": self.via}


# ============================================================
# CLIENT
# ============================================================

class LedgerClient:
    """Thin wrapper over the public indexer and broadcast APIs."""

    def __init__(self, config: Optional[LedgerConfig] = None) -> None:
        self.config = config or LedgerConfig.from_env()

    # ---- lookups ------------------------------------------------------
    def get_utxos_by_script_hash(self, script_hash: str) -> List[Utxo]:
        """UTXOs of a bare script, keyed by byte-reversed SHA-256 of the script."""
        data = self._get(f"/script/{script_hash}/unspent")
        return self._parse_utxos(data)

    def get_utxos(self, address: str) -> List[Utxo]:
        return self._parse_utxos(self._get(f"/address/{address}/unspent"))

    def get_balance(self, address: str) -> Dict[str, int]:
        data = self._get(f"/address/{address}/balance")
        confirmed = int(data.get("confirmed") or 0)
        unconfirmed = int(data.get("unconfirmed") or 0)
        return {
            "confirmed": confirmed,
            "unconfirmed": unconfirmed,
            "total": confirmed + unconfirmed,
        }

    def get_price(self) -> float:
        """BSV/USD exchange rate."""
        data = self._get("/exchangerate", timeout=self.config.price_timeout)
        try:
            return float(data["rate"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError("WhatsOnChain", f"unexpected price payload: {data!r}") from exc

    def get_transaction(self, txid: str) -> Dict[str, Any]:
        return self._get(f"/tx/{txid}")

    # ---- broadcast ----------------------------------------------------
    def broadcast(self, raw_hex: str) -> BroadcastResult:
        """
        Try TAAL (once per configured key), then GorillaPool, then
        WhatsOnChain.  Returns the first success.

        Raises:
            BroadcastError listing every endpoint's failure.
        """
        failures: List[str] = []

        for key in self.config.taal_keys:
            try:
                resp = requests.post(
                    self.config.taal_url,
                    json={"rawTx": raw_hex},
                    headers={"Authorization": f"Bearer {key}"},
                    timeout=self.config.api_timeout,
                )
                if resp.status_code == 200:
                    txid = self._txid_from(resp, raw_hex)
                    log.info("Broadcast OK via TAAL -- txid=%s", txid)
                    return BroadcastResult(txid=txid, via="TAAL")
                failures.append(f"TAAL: HTTP {resp.status_code}: {resp.text[:200]}")
            except (requests.RequestException, ValueError) as exc:
                failures.append(f"TAAL: {exc}")

        try:
            resp = requests.post(
                self.config.gorilla_url,
                json={"rawtx": raw_hex},
                timeout=self.config.api_timeout,
            )
            data = self._mapi_payload(resp.json())
            if data.get("returnResult") == "success" or data.get("txid"):
                txid = data.get("txid") or self._local_txid(raw_hex)
                log.info("Broadcast OK via GorillaPool -- txid=%s", txid)
                return BroadcastResult(txid=txid, via="GorillaPool")
            failures.append(
                f"GorillaPool: {data.get('resultDescription') or data.get('message') or data}"
            )
        except (requests.RequestException, ValueError) as exc:
            failures.append(f"GorillaPool: {exc}")

        try:
            resp = requests.post(
                f"{self.config.woc_base}/tx/raw",
                json={"txhex": raw_hex},
                timeout=self.config.api_timeout,
            )
            if resp.status_code == 200:
                txid = resp.text.strip().strip('"')
                log.info("Broadcast OK via WhatsOnChain -- txid=%s", txid)
                return BroadcastResult(txid=txid, via="WhatsOnChain")
            failures.append(f"WhatsOnChain: HTTP {resp.status_code}: {resp.text[:200]}")
        except requests.RequestException as exc:
            failures.append(f"WhatsOnChain: {exc}")

        for reason in failures:
            log.warning("Broadcast failed -- %s", reason)
        raise BroadcastError(failures)

    # ---- helpers ------------------------------------------------------
    def _get(self, path: str, timeout: Optional[float] = None) -> Any:
        url = f"{self.config.woc_base}{path}"
        try:
            resp = requests.get(url, timeout=timeout or self.config.api_timeout)
        except requests.RequestException as exc:
            raise ProviderError("WhatsOnChain", f"request failed: {exc}") from exc
        if resp.status_code != 200:
            raise ProviderError(
                "WhatsOnChain", f"HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError("WhatsOnChain", f"invalid JSON from {path}") from exc

    @staticmethod
    def _parse_utxos(data: Any) -> List[Utxo]:
        if not isinstance(data, list):
            raise ProviderError("WhatsOnChain", f"expected a UTXO list, got {data!r}")
        try:
            return [Utxo.from_dict(u) for u in data]
        except ValidationError as exc:
            raise ProviderError("WhatsOnChain", str(exc)) from exc

    @staticmethod
    def _mapi_payload(data: Dict[str, Any]) -> Dict[str, Any]:
        """mAPI wraps its answer in a JSON-encoded ``payload`` string."""
        if not isinstance(data, dict):
            return {}
        payload = data.get("payload")
        if isinstance(payload, str):
            data = json.loads(payload)
        return data if isinstance(data, dict) else {}

    def _txid_from(self, resp: requests.Response, raw_hex: str) -> str:
        data = resp.json()
        if isinstance(data, dict):
            txid = data.get("txid") or data.get("result")
        else:
            txid = data
        return str(txid).replace('"', "") if txid else self._local_txid(raw_hex)

    @staticmethod
    def _local_txid(raw_hex: str) -> str:
        return hash256(bytes.fromhex(raw_hex))[::-1].hex()
