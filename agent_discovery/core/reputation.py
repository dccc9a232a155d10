"""
Reputation aggregation and feedback row mapping.

These functions are pure: they work the same on subgraph rows, rows decoded
from chain events and Feedback objects.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .identifiers import parse_feedback_id
from .models import Feedback

logger = logging.getLogger(__name__)

ZERO_BYTES32_HEX = "0x" + "00" * 32


def decode_tag(value: Any) -> Optional[str]:
    """Return a tag as text.

    Older deployments store tags as bytes32 (raw bytes or 0x-hex); current
    ones store plain strings. Empty and all-zero tags are None.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).rstrip(b"\x00").decode("utf-8", errors="ignore")
        return text or None
    if not isinstance(value, str) or not value:
        return None
    if value == ZERO_BYTES32_HEX:
        return None
    if value.startswith("0x") and len(value) == 66:
        try:
            text = bytes.fromhex(value[2:]).rstrip(b"\x00").decode("utf-8", errors="ignore")
        except ValueError:
            return value
        return text or None
    return value


def tags_match(record_tags: Tuple[Optional[str], Optional[str]], tag1: Optional[str] = None, tag2: Optional[str] = None) -> bool:
    """
    Symmetric tag matching.

    With two target tags the record's (tag1, tag2) pair must equal them in
    either order. With one target tag either record slot may hold it. With
    none every record matches.
    """
    first, second = record_tags
    if tag1 and tag2:
        return (first == tag1 and second == tag2) or (first == tag2 and second == tag1)
    wanted = tag1 or tag2
    if wanted:
        return first == wanted or second == wanted
    return True


def _score(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _record_fields(record: Any) -> Tuple[Optional[float], Tuple[Optional[str], Optional[str]], bool]:
    if isinstance(record, Feedback):
        tags = list(record.tags) + [None, None]
        return _score(record.score), (tags[0], tags[1]), bool(record.isRevoked)
    feedback_file = record.get("feedbackFile") or {}
    tag1 = decode_tag(record.get("tag1")) or decode_tag(feedback_file.get("tag1"))
    tag2 = decode_tag(record.get("tag2")) or decode_tag(feedback_file.get("tag2"))
    return _score(record.get("score")), (tag1, tag2), bool(record.get("isRevoked"))


def compute_reputation(records: Iterable[Any], tag1: Optional[str] = None, tag2: Optional[str] = None) -> Dict[str, Any]:
    """
    Aggregate feedback into {"count", "averageScore"}.

    Revoked records are skipped. count includes every remaining record that
    matches the tags; the mean only uses positive scores and is rounded to two
    decimals. No qualifying records gives {"count": 0, "averageScore": 0}.
    """
    count = 0
    total = 0.0
    scored = 0
    for record in records:
        score, record_tags, revoked = _record_fields(record)
        if revoked or not tags_match(record_tags, tag1, tag2):
            continue
        count += 1
        if score is not None and score > 0:
            total += score
            scored += 1

    average = round(total / scored, 2) if scored else 0
    return {"count": count, "averageScore": average}


def row_agent_id(row: Dict[str, Any]) -> Optional[str]:
    agent = row.get("agent")
    if isinstance(agent, dict) and agent.get("id"):
        return agent["id"]
    feedback_id = row.get("id")
    if isinstance(feedback_id, str) and feedback_id.count(":") >= 3:
        return parse_feedback_id(feedback_id)[0]
    return None


def aggregate_by_agent(rows: Iterable[Dict[str, Any]], tag1: Optional[str] = None, tag2: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Per-agent compute_reputation over a mixed list of feedback rows."""
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        agent_id = row_agent_id(row)
        if agent_id:
            grouped.setdefault(agent_id, []).append(row)
    return {agent_id: compute_reputation(group, tag1, tag2) for agent_id, group in grouped.items()}


def _parse_context(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            logger.debug("Feedback context is not JSON, ignoring")
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def feedback_from_row(row: Dict[str, Any]) -> Feedback:
    """Map an indexed feedback row to the Feedback model."""
    agent_id, client_address, feedback_index = parse_feedback_id(row["id"])

    feedback_file = row.get("feedbackFile") or {}
    if not isinstance(feedback_file, dict):
        feedback_file = {}

    answers = []
    for resp in row.get("responses") or []:
        answers.append({
            "responder": resp.get("responder"),
            "responseUri": resp.get("responseUri"),
            "responseHash": resp.get("responseHash"),
            "createdAt": _int_or_none(resp.get("createdAt")),
        })

    tags = [
        tag for tag in (
            decode_tag(row.get("tag1")) or decode_tag(feedback_file.get("tag1")),
            decode_tag(row.get("tag2")) or decode_tag(feedback_file.get("tag2")),
        )
        if tag
    ]

    proof_of_payment = None
    if feedback_file.get("proofOfPaymentFromAddress"):
        proof_of_payment = {
            "fromAddress": feedback_file.get("proofOfPaymentFromAddress"),
            "toAddress": feedback_file.get("proofOfPaymentToAddress"),
            "chainId": feedback_file.get("proofOfPaymentChainId"),
            "txHash": feedback_file.get("proofOfPaymentTxHash"),
        }

    score = _score(row.get("score"))
    return Feedback(
        id=(agent_id, client_address, feedback_index),
        agentId=agent_id,
        reviewer=client_address,
        score=int(score) if score is not None else None,
        tags=tags,
        endpoint=row.get("endpoint") or None,
        text=feedback_file.get("text"),
        context=_parse_context(feedback_file.get("context")),
        proofOfPayment=proof_of_payment,
        fileURI=row.get("feedbackURI") or row.get("feedbackUri") or None,
        fileHash=row.get("feedbackHash") or None,
        createdAt=_int_or_none(row.get("createdAt")) or int(time.time()),
        answers=answers,
        isRevoked=bool(row.get("isRevoked", False)),
        capability=feedback_file.get("capability"),
        name=feedback_file.get("name"),
        skill=feedback_file.get("skill"),
        task=feedback_file.get("task"),
    )
