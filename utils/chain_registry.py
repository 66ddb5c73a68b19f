"""
Filename -> chain profile 분류.

Note:
- 패턴은 리스트 순서대로 검사한다. `opbnb`가 `op`보다, `scroll`이 `sol`보다
  먼저 와야 오분류가 없으므로 순서를 바꾸지 말 것.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from utils.config import FMV_CURRENCY
from utils.fmv_contracts import ChainProfile
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChainRule:
    name: str
    feed_id: str
    patterns: tuple[re.Pattern, ...]


def _rule(name: str, feed_id: str, *patterns: str) -> ChainRule:
    return ChainRule(
        name=name,
        feed_id=feed_id,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
    )


CHAIN_RULES: tuple[ChainRule, ...] = (
    _rule("opbnb", "opbnb", r"opbnb"),
    _rule("scroll", "scroll", r"scroll", r"scr"),
    _rule("bsc", "binancecoin", r"bsc", r"binance"),
    _rule("sol", "solana", r"sol", r"solana"),
    _rule("base", "base", r"base"),
    _rule("arb", "arbitrum", r"arb", r"arbitrum"),
    _rule("eth", "ethereum", r"eth", r"ethereum"),
    _rule("ton", "the-open-network", r"ton"),
    _rule("op", "optimism", r"op", r"opt", r"opti", r"optimism"),
    _rule("lin", "linea", r"lin", r"linea"),
    _rule("sonic", "sonic", r"sonic"),
    _rule("zksync", "zksync", r"zksync"),
)


def detect_chain(
    filename: str,
    *,
    currency: str = FMV_CURRENCY,
    rules: tuple[ChainRule, ...] = CHAIN_RULES,
) -> ChainProfile | None:
    """
    파일명에서 체인을 판별한다. 판별 불가 시 None (호출부에서 skip).

    Called from:
    - `workers.fmv_ingest.FmvIngestCoordinator.process_file`
    """
    lowered = filename.lower()
    for rule in rules:
        if any(pattern.search(lowered) for pattern in rule.patterns):
            logger.info(f"[{filename}] chain detected: {rule.name}")
            return ChainProfile(name=rule.name, feed_id=rule.feed_id, currency=currency)

    logger.warning(f"[{filename}] cannot detect blockchain")
    return None


def profile_for_chain(
    name: str,
    *,
    currency: str = FMV_CURRENCY,
    rules: tuple[ChainRule, ...] = CHAIN_RULES,
) -> ChainProfile:
    """
    체인 이름으로 profile을 직접 조회한다(backlog run용).
    """
    normalized = name.strip().lower()
    for rule in rules:
        if rule.name == normalized:
            return ChainProfile(name=rule.name, feed_id=rule.feed_id, currency=currency)

    supported = ", ".join(rule.name for rule in rules)
    raise ValueError(f"Unsupported chain: {name!r}. Supported: {supported}")
