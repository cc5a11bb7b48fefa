"""
playroom.services.purchases
~~~~~~~~~~~~~~~~~~~~~~~~~~~

“真心话大冒险”房间内购买的服务端价格表。

价格以美元标注，换算为分后参与计费；客户端只提交购买类型与选项，
金额永远由服务端决定。
"""
from __future__ import annotations

from typing import Any

from playroom.core.errors import InvalidPurchaseError
from playroom.schemas.room_interactions import PurchaseKind

_CENTS = 100

TIER_PRICES: dict[str, int] = {"bronze": 5, "silver": 10, "gold": 20}
CROWD_TIER_FEES: dict[str, int] = {"bronze": 5, "silver": 10, "gold": 15}
CROWD_TRUTH_DARE_FEES: dict[str, int] = {"truth": 5, "dare": 10}
CUSTOM_PRICES: dict[str, int] = {"custom_truth": 25, "custom_dare": 35}


def _lookup(table: dict[str, int], option: str | None, kind: str) -> int:
    if option not in table:
        raise InvalidPurchaseError(
            f"{kind} requires option in {sorted(table)}",
        )
    return table[option] * _CENTS


def price_purchase(
    kind: PurchaseKind, option: str | None = None, text: str | None = None,
) -> tuple[int, dict[str, Any]]:
    """计算购买金额（分）与写入流水的元数据。

    Raises:
        InvalidPurchaseError: 选项不合法，或自定义请求缺少内容。
    """
    if kind == "tier_purchase":
        return _lookup(TIER_PRICES, option, kind), {"kind": kind, "tier": option}
    if kind == "crowd_vote_tier":
        return _lookup(CROWD_TIER_FEES, option, kind), {"kind": kind, "tier": option}
    if kind == "crowd_vote_truth_dare":
        return _lookup(CROWD_TRUTH_DARE_FEES, option, kind), {"kind": kind, "vote": option}

    # custom_truth / custom_dare
    trimmed = (text or "").strip()
    if not trimmed:
        raise InvalidPurchaseError("Please enter your request text")
    return CUSTOM_PRICES[kind] * _CENTS, {"kind": kind, "text": trimmed}
