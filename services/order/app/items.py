"""
Order Service — 発注明細の正規化

ドキュメントストアは None（未定義値）を含むフィールドを受け付けない前提で、
書き込み前に明細を正規化する。
"""

import math
from collections.abc import Iterable

from .events import OrderStatus

TEXT_FIELDS = ("productId", "productName", "productSku")


def to_finite_number(value, default: float = 0) -> float:
    """数値に変換する。変換できない値・NaN・無限大は default にする。"""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return int(number) if number.is_integer() else number


def sanitize_items_for_store(items: Iterable[dict]) -> list[dict]:
    """
    明細リストをストアに書ける形にする。

    - quantity / receivedQuantity は有限の数値（既定 0）
    - remainingQuantity = max(0, quantity - receivedQuantity)
    - description は常に文字列（未指定なら空文字）
    - その他の None 値のフィールドは落とす
    """
    sanitized = []
    for item in items:
        quantity = to_finite_number(item.get("quantity"))
        received = to_finite_number(item.get("receivedQuantity"))
        clean = {k: v for k, v in item.items() if v is not None}
        clean.update(
            quantity=quantity,
            receivedQuantity=received,
            remainingQuantity=max(0, quantity - received),
            description=str(item.get("description") or ""),
        )
        sanitized.append(clean)
    return sanitized


def normalize_new_items(items: Iterable[dict]) -> list[dict]:
    """
    新規発注用の明細を正規化する。

    ID・商品名・SKU が空の行と、数量が正の有限数でない行は捨てる。
    入荷数 0・残数 = 発注数で初期化する。
    """
    normalized = []
    for item in items:
        if not isinstance(item, dict):
            continue
        row = {field: str(item.get(field) or "").strip() for field in TEXT_FIELDS}
        quantity = to_finite_number(item.get("quantity"), default=-1)
        if not all(row.values()) or quantity <= 0:
            continue
        normalized.append(
            {
                **row,
                "quantity": quantity,
                "receivedQuantity": 0,
                "remainingQuantity": quantity,
                "description": str(item.get("description") or ""),
            }
        )
    return normalized


def derive_status(items: list[dict], current: OrderStatus) -> OrderStatus:
    """入荷状況からステータスを決める。どの行も未入荷なら現状維持。"""
    if items and all(to_finite_number(i.get("remainingQuantity")) <= 0 for i in items):
        return "received"
    if any(to_finite_number(i.get("receivedQuantity")) > 0 for i in items):
        return "partially-received"
    return current
