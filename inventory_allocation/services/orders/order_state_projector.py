# 📄 inventory_allocation/services/orders/order_state_projector.py
# 역할: 주문품목 할당 상태 → 주문(order_header) 상태 재계산
#   - 모든 품목 충족(allocated_qty + shipped_qty == qty) → confirmed
#   - 일부라도 할당/출고됨                                → partial
#   - 아무것도 없음                                       → pending
#   - 모든 품목 출고 완료(shipped_qty == qty)             → shipped
# 재고는 건드리지 않는다. 여러 번 호출해도 결과가 같다.

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_allocation.models import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_PARTIAL,
    ORDER_PENDING,
    ORDER_SHIPPED,
    OrderHeader,
    OrderItem,
)
from inventory_allocation.system.timeutil import utc_now

logger = logging.getLogger(__name__)

# 외부(배송/정산)에서 확정한 상태는 덮어쓰지 않는다
FROZEN_ORDER_STATUSES = frozenset({ORDER_CANCELLED, ORDER_DELIVERED, ORDER_COMPLETED})

# (qty, allocated_qty, shipped_qty)
LineState = Tuple[int, int, int]


def derive_status(lines: Sequence[LineState]) -> str:
    if not lines:
        return ORDER_PENDING

    if all(shipped >= qty for qty, _, shipped in lines):
        return ORDER_SHIPPED
    if all(allocated + shipped >= qty for qty, allocated, shipped in lines):
        return ORDER_CONFIRMED
    if any(allocated + shipped > 0 for _, allocated, shipped in lines):
        return ORDER_PARTIAL
    return ORDER_PENDING


class OrderStateProjector:
    def __init__(self, session: Session, *, actor: str = "system"):
        self.session = session
        self.actor = actor or "system"

    def project(self, order_ids: Iterable[int]) -> Dict[int, str]:
        """주문별 최종 상태를 돌려준다. 바뀐 주문만 UPDATE."""
        ids = sorted(set(int(i) for i in order_ids))
        if not ids:
            return {}

        headers = (
            self.session.execute(
                select(OrderHeader)
                .where(OrderHeader.id.in_(ids))
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )

        lines: Dict[int, List[LineState]] = defaultdict(list)
        rows = self.session.execute(
            select(
                OrderItem.header_id,
                OrderItem.qty,
                OrderItem.allocated_qty,
                OrderItem.shipped_qty,
            ).where(OrderItem.header_id.in_(ids))
        ).all()
        for r in rows:
            lines[r.header_id].append((int(r.qty), int(r.allocated_qty or 0), int(r.shipped_qty or 0)))

        result: Dict[int, str] = {}
        changed = 0
        for header in headers:
            if header.status in FROZEN_ORDER_STATUSES:
                result[header.id] = header.status
                continue

            status = derive_status(lines.get(header.id, []))
            if status != header.status:
                logger.debug("주문 상태 변경: order_id=%s %s → %s", header.id, header.status, status)
                header.status = status
                header.updated_by = self.actor
                header.updated_at = utc_now()
                changed += 1
            result[header.id] = status

        if changed:
            self.session.flush()
        return result
