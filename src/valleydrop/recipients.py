"""
valleydrop/recipients.py

Recipient Set Builder.

Normalizes raw (address, weight) pairs from a manifest upload or a policy
holder query into the recipient set attached to a session:

1. Merge duplicate addresses (weights summed, first-seen order kept)
2. Drop entries with weight <= 0 or a malformed address prefix
3. rate = total_budget / sum(weight) over the filtered set
4. Drop entries whose floor(weight * rate) is below the minimum payout
5. Recompute rate over what is left

Usage:
    from valleydrop.recipients import build

    result = build([("addr1...", 3), ("addr1...", 7)], total_budget=100_000_000)
    result.recipients, result.rate, result.dust_dropped
"""

import json
import logging
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import requests

from .config import ADDRESS_PREFIX, MIN_PAYOUT_LOVELACE
from .errors import NoEligibleRecipients, ValidationError
from .session import Recipient

logger = logging.getLogger("valleydrop.recipients")

RawEntry = Union[Recipient, Tuple[str, int], Mapping[str, Any]]

MANIFEST_FORMAT_HINT = '[{"address":"addr...","quantity":N}, ...]'
MANIFEST_FETCH_TIMEOUT = 30


@dataclass
class RecipientSet:
    """Output of build(): the final recipients plus disclosure counts."""
    recipients: List[Recipient]
    total_budget: int
    total_weight: int
    invalid_dropped: int = 0
    dust_dropped: int = 0
    raw_count: int = 0
    raw_weight: int = 0

    @property
    def rate(self) -> Fraction:
        return Fraction(self.total_budget, self.total_weight)

    def payout_for(self, recipient: Recipient) -> int:
        return recipient.weight * self.total_budget // self.total_weight

    @property
    def total_payout(self) -> int:
        return sum(self.payout_for(r) for r in self.recipients)

    def payouts(self) -> Dict[str, int]:
        return {r.address: self.payout_for(r) for r in self.recipients}


def _coerce(entry: RawEntry) -> Optional[Tuple[str, int]]:
    """Turn one raw entry into (address, weight), or None if unusable."""
    if isinstance(entry, Recipient):
        return entry.address, entry.weight
    if isinstance(entry, Mapping):
        address = entry.get("address")
        weight = entry.get("weight", entry.get("quantity"))
    else:
        try:
            address, weight = entry
        except (TypeError, ValueError):
            return None
    if not isinstance(address, str):
        return None
    try:
        weight = int(weight)
    except (TypeError, ValueError):
        return None
    return address.strip(), weight


def build(
    raw_entries: Iterable[RawEntry],
    total_budget: int,
    min_payout: int = MIN_PAYOUT_LOVELACE,
    address_prefix: str = ADDRESS_PREFIX,
) -> RecipientSet:
    """
    Build the recipient set and payout rate.

    Args:
        raw_entries: (address, weight) pairs, Recipients, or manifest dicts
        total_budget: Amount to distribute, in the smallest unit
        min_payout: Payouts below this are dust
        address_prefix: Required address prefix for the destination chain

    Returns:
        RecipientSet

    Raises:
        ValidationError: total_budget is not positive
        NoEligibleRecipients: nothing left before or after dust filtering
    """
    if total_budget <= 0:
        raise ValidationError(f"Total budget must be positive, got {total_budget}")

    merged: Dict[str, int] = {}
    raw_count = 0
    raw_weight = 0
    invalid = 0

    for entry in raw_entries:
        raw_count += 1
        coerced = _coerce(entry)
        if coerced is None:
            invalid += 1
            continue
        address, weight = coerced
        if weight > 0:
            raw_weight += weight
        if weight <= 0 or not address.startswith(address_prefix):
            invalid += 1
            continue
        merged[address] = merged.get(address, 0) + weight

    if not merged:
        raise NoEligibleRecipients(
            "No holders with a valid address and positive quantity",
            invalid_dropped=invalid,
        )

    total_weight = sum(merged.values())
    kept = {
        address: weight
        for address, weight in merged.items()
        if weight * total_budget // total_weight >= min_payout
    }
    dust = len(merged) - len(kept)

    if not kept:
        raise NoEligibleRecipients(
            f"No holders with at least {min_payout} units of payout after "
            f"calculating the per-weight rate. Try increasing the budget.",
            invalid_dropped=invalid,
            dust_dropped=dust,
        )

    final_weight = sum(kept.values())
    recipients = [Recipient(address, weight) for address, weight in kept.items()]

    logger.info(
        f"Built recipient set: {len(recipients)} recipients, weight {final_weight}, "
        f"{invalid} invalid dropped, {dust} dust dropped"
    )

    return RecipientSet(
        recipients=recipients,
        total_budget=total_budget,
        total_weight=final_weight,
        invalid_dropped=invalid,
        dust_dropped=dust,
        raw_count=raw_count,
        raw_weight=raw_weight,
    )


# ============================================================================
# MANIFEST SOURCE
# ============================================================================

def parse_manifest(text: str) -> List[Tuple[str, int]]:
    """
    Parse a holders manifest.

    Raises:
        ValidationError: not a JSON list of {"address", "quantity"} objects
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Holders file is not valid JSON ({e}). Expected {MANIFEST_FORMAT_HINT}")

    if not isinstance(data, list):
        raise ValidationError(f"Holders file must be a JSON list. Expected {MANIFEST_FORMAT_HINT}")

    entries = []
    for item in data:
        if not isinstance(item, dict) or "address" not in item:
            raise ValidationError(f"Malformed holder entry {item!r}. Expected {MANIFEST_FORMAT_HINT}")
        weight = item.get("quantity", item.get("weight", 0))
        try:
            entries.append((str(item["address"]), int(weight)))
        except (TypeError, ValueError):
            raise ValidationError(f"Holder quantity is not an integer: {item!r}")
    return entries


def load_manifest(source: str) -> List[Tuple[str, int]]:
    """
    Load a holders manifest from a local path or an http(s) URL.

    Blocking; call through trio.to_thread.run_sync from async code.
    """
    if source.startswith(("http://", "https://")):
        try:
            response = requests.get(source, timeout=MANIFEST_FETCH_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ValidationError(f"Failed to download holders file: {e}")
        text = response.text
    else:
        try:
            with open(source, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise ValidationError(f"Failed to read holders file: {e}")
    return parse_manifest(text)


def write_manifest(path: str, recipients: Iterable[Recipient]) -> None:
    """Persist the final recipient set alongside the session wallet."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(
            [{"address": r.address, "quantity": r.weight} for r in recipients],
            f,
            indent=2,
        )
