"""
PCR (measurement register) validation.

Two sources of known-good measurements:
- built-in PCR0 allowlists (prod + dev enclave images)
- a signed PCR history published by the operator; each entry carries an
  ECDSA P-384 signature over its own fields, checked against a pinned key

Expected values for the verifier's strict per-index check are built with
expected_pcrs_from_hex().
"""

import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests
from Crypto.PublicKey import ECC
from pydantic import ValidationError

from enclave_client.common.protocol import PcrHistoryEntry
from enclave_client.crypto.cose import AttestationDocument
from enclave_client.crypto.sign import ecdsa_p384_verify_b64

logger = logging.getLogger(__name__)


# =============================================================================
# KNOWN-GOOD PCR0 VALUES
# =============================================================================

DEFAULT_PCR0_VALUES: List[str] = [
    "eeddbb58f57c38894d6d5af5e575fbe791c5bf3bbcfb5df8da8cfcf0c2e1da1913108e6a762112444740b88c163d7f4b",
    "74ed417f88cb0ca76c4a3d10f278bd010f1d3f95eafb254d4732511bb50e404507a4049b779c5230137e4091a5582271",
    "9043fcab93b972d3c14ad2dc8fa78ca7ad374fc937c02435681772a003f7a72876bc4d578089b5c4cf3fe9b480f1aabb",
    "52c3595b151d93d8b159c257301bfd5aa6f49210de0c55a6cd6df5ebeee44e4206cab950500f5d188f7fa14e6d900b75",
    "91cb67311e910cce68cd5b7d0de77aa40610d87c6681439b44c46c3ff786ae643956ab2c812478a1da8745b259f07a45",
    "859065ac81b81d3735130ba08b8af72a7256b603fefb74faabae25ed28cca6edcaa7c10ea32b5948d675c18a9b0f2b1d",
    "acd82a7d3943e23e95a9dc3ce0b0107ea358d6287f9e3afa245622f7c7e3e0a66142a928b6efcc02f594a95366d3a99d",
]

DEFAULT_PCR0_VALUES_DEV: List[str] = [
    "62c0407056217a4c10764ed9045694c29fa93255d3cc04c2f989cdd9a1f8050c8b169714c71f1118ebce2fcc9951d1a9",
    "cb95519905443f9f66f05f63c548b61ad1561a27fd5717b69285861aaea3c3063fe12a2571773b67fea3c6c11b4d8ec6",
    "deb5895831b5e4286f5a2dcf5e9c27383821446f8df2b465f141d10743599be20ba3bb381ce063bf7139cc89f7f61d4c",
    "70ba26c6af1ec3b57ce80e1adcc0ee96d70224d4c7a078f427895cdf68e1c30f09b5ac4c456588d872f3f21ff77c036b",
    "669404ea71435b8f498b48db7816a5c2ab1d258b1a77685b11d84d15a73189504d79c4dee13a658de9f4a0cbfc39cfe8",
    "a791bf92c25ffdfd372660e460a0e238c6778c090672df6509ae4bc065cf8668b6baac6b6a11d554af53ee0ff0172ad5",
    "c4285443b87b9b12a6cea3bef1064ec060f652b235a297095975af8f134e5ed65f92d70d4616fdec80af9dff48bb9f35",
]

# Signs PCR history entries (P-384 SubjectPublicKeyInfo, DER, base64)
PCR_HISTORY_PUBLIC_KEY_B64 = (
    "MHYwEAYHKoZIzj0CAQYFK4EEACIDYgAEsT4fLLWwA2IyUQbRjhsjz46Ts14mxVzvu8eC68rM7r9b3tZ1yYX311Wa"
    "QcDOhNbT5vCYivkqA0EXN3aDFSmXHyFzKKxqyOEGBgnRxSBpMQNrc2yumBMDvseiEdCSpQwR"
)

PCR_HISTORY_URLS = {
    "prod": "https://raw.githubusercontent.com/OpenSecretCloud/opensecret/master/pcrProdHistory.json",
    "dev": "https://raw.githubusercontent.com/OpenSecretCloud/opensecret/master/pcrDevHistory.json",
}

PCR_HISTORY_CACHE_TTL_SECONDS = int(os.getenv("PCR_HISTORY_CACHE_TTL_SECONDS", "900"))


@dataclass(frozen=True)
class Pcr0ValidationResult:
    is_match: bool
    text: str


@dataclass
class PcrConfig:
    pcr0_values: List[str] = field(default_factory=list)
    pcr0_dev_values: List[str] = field(default_factory=list)
    remote_validation_url: Optional[str] = None


def expected_pcrs_from_hex(values: Mapping[int, str]) -> Dict[int, bytes]:
    """{0: "abcd..."} → {0: b"\\xab\\xcd..."}; raises ValueError on bad hex."""
    return {int(index): bytes.fromhex(value) for index, value in values.items()}


def load_pcr_public_key(key_b64: str = PCR_HISTORY_PUBLIC_KEY_B64) -> ECC.EccKey:
    return ECC.import_key(base64.b64decode(key_b64))


# =============================================================================
# LOCAL ALLOWLIST
# =============================================================================

def validate_pcr0(pcr0_hex: str, config: Optional[PcrConfig] = None) -> Pcr0ValidationResult:
    config = config or PcrConfig()
    pcr0_hex = pcr0_hex.lower()

    if pcr0_hex in config.pcr0_values or pcr0_hex in DEFAULT_PCR0_VALUES:
        return Pcr0ValidationResult(True, "PCR0 matches a known good value")

    if pcr0_hex in config.pcr0_dev_values or pcr0_hex in DEFAULT_PCR0_VALUES_DEV:
        return Pcr0ValidationResult(True, "PCR0 matches development enclave")

    return Pcr0ValidationResult(False, "PCR0 does not match a known good value")


# =============================================================================
# SIGNED HISTORY
# =============================================================================

def pcr_entry_message(entry: PcrHistoryEntry) -> bytes:
    """
    The signed message: the entry without its signature, as compact JSON
    with sorted keys.
    """
    data = {
        "HashAlgorithm": entry.hash_algorithm,
        "PCR0": entry.pcr0,
        "PCR1": entry.pcr1,
        "PCR2": entry.pcr2,
        "timestamp": entry.timestamp,
    }
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


def verify_pcr_entry(entry: PcrHistoryEntry, public_key: ECC.EccKey) -> bool:
    if not entry.signature:
        return False
    return ecdsa_p384_verify_b64(public_key, pcr_entry_message(entry), entry.signature)


def validate_pcrs_against_history(
    pcr0: str,
    pcr1: str,
    pcr2: str,
    history: Iterable[PcrHistoryEntry],
    public_key: Optional[ECC.EccKey] = None,
) -> Pcr0ValidationResult:
    history = list(history)
    if not history:
        return Pcr0ValidationResult(False, "Couldn't validate against PCR history")

    public_key = public_key or load_pcr_public_key()
    wanted = (pcr0.lower(), pcr1.lower(), pcr2.lower())

    for entry in history:
        if (entry.pcr0.lower(), entry.pcr1.lower(), entry.pcr2.lower()) != wanted:
            continue
        if verify_pcr_entry(entry, public_key):
            return Pcr0ValidationResult(True, "PCR matches history with valid signature")
        logger.warning("[PCR] history entry for PCR0 %s... has an invalid signature", pcr0[:16])

    return Pcr0ValidationResult(False, "PCR not found in verified history")


def parse_pcr_history(data: Any) -> List[PcrHistoryEntry]:
    if not isinstance(data, list):
        raise ValueError("PCR history must be a JSON array")
    return [PcrHistoryEntry.model_validate(item) for item in data]


# ---------------------------------------------------------
# Remote history cache
# ---------------------------------------------------------

_history_cache: Dict[str, Dict[str, Any]] = {}
_history_cache_lock = threading.Lock()


def clear_pcr_history_cache() -> None:
    with _history_cache_lock:
        _history_cache.clear()


def fetch_pcr_history(env: str = "prod", url: Optional[str] = None,
                      timeout: float = 10) -> List[PcrHistoryEntry]:
    """
    Fetch the published history with a TTL cache.
    A failed fetch returns [] so validation fails closed.
    """
    url = url or PCR_HISTORY_URLS[env]
    now = time.time()

    with _history_cache_lock:
        cached = _history_cache.get(url)
        if cached and now - cached["fetched_at"] < PCR_HISTORY_CACHE_TTL_SECONDS:
            return cached["entries"]

    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        entries = parse_pcr_history(response.json())
    except (requests.RequestException, ValueError, ValidationError) as e:
        logger.warning("[PCR] Failed to fetch PCR history from %s: %s", url, e)
        return []

    with _history_cache_lock:
        _history_cache[url] = {"fetched_at": now, "entries": entries}

    logger.info("[PCR] Fetched %d PCR history entries from %s", len(entries), url)
    return entries


# =============================================================================
# DOCUMENT-LEVEL CHECK
# =============================================================================

def validate_document_pcrs(doc: AttestationDocument,
                           config: Optional[PcrConfig] = None) -> Pcr0ValidationResult:
    """
    PCR0 against the allowlists first; then, if a history URL is configured,
    PCR0-2 against the signed history.
    """
    pcr0 = doc.pcrs.get(0)
    if pcr0 is None:
        return Pcr0ValidationResult(False, "PCR0 not present in attestation document")

    result = validate_pcr0(pcr0.hex(), config)
    if result.is_match or config is None or not config.remote_validation_url:
        return result

    history = fetch_pcr_history(url=config.remote_validation_url)
    return validate_pcrs_against_history(
        pcr0.hex(),
        doc.pcrs.get(1, b"").hex(),
        doc.pcrs.get(2, b"").hex(),
        history,
    )
