# app/api/routes/orders.py
#
# Buyer-facing reads: paged order history with line items, and licenses.
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from app.core.auth import require_user
from app.core.db import get_db
from app.core.money import fmt_cents

router = APIRouter()


@router.get("/orders/mine")
def list_my_orders(
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None, description="Filter by order status (pending/paid/expired/failed/refunded)"),
):
    offset = (page - 1) * page_size

    where_parts = ["o.buyer_id = :b"]
    params: Dict[str, Any] = {"b": int(user["user_id"]), "limit": int(page_size), "offset": int(offset)}

    st_clean = (status or "").strip().lower()
    if st_clean:
        where_parts.append("o.status = :st")
        params["st"] = st_clean

    where_sql = " and ".join(where_parts)

    total = int(db.execute(text(f"select count(*) from orders o where {where_sql}"), params).scalar() or 0)

    rows = db.execute(
        text(f"""
            select
                o.id,
                o.order_number,
                o.status,
                o.subtotal_cents,
                o.discount_cents,
                o.coupon_code,
                o.total_cents,
                o.currency,
                o.paid_at,
                o.created_at
              from orders o
             where {where_sql}
             order by o.created_at desc, o.id desc
             limit :limit offset :offset
        """),
        params,
    ).fetchall()

    order_ids = [int(r[0]) for r in rows]
    items_by_order: Dict[int, List[Dict[str, Any]]] = {oid: [] for oid in order_ids}
    if order_ids:
        item_rows = db.execute(
            text("""
                select order_id, template_id, title, price_cents
                  from order_items
                 where order_id in :ids
                 order by order_id, position
            """).bindparams(bindparam("ids", expanding=True)),
            {"ids": order_ids},
        ).fetchall()
        for r in item_rows:
            items_by_order[int(r[0])].append(
                {"template_id": int(r[1]), "title": r[2], "price_cents": int(r[3]), "price": fmt_cents(r[3])}
            )

    items = [
        {
            "id": int(r[0]),
            "order_number": r[1],
            "status": r[2],
            "subtotal_cents": int(r[3]),
            "discount_cents": int(r[4] or 0),
            "coupon_code": r[5],
            "total_cents": int(r[6]),
            "total": fmt_cents(r[6]),
            "currency": r[7],
            "paid_at": str(r[8]) if r[8] else None,
            "created_at": str(r[9]) if r[9] else None,
            "items": items_by_order.get(int(r[0]), []),
        }
        for r in rows
    ]

    return {"ok": True, "page": page, "page_size": page_size, "total": total, "items": items}


@router.get("/licenses/mine")
def list_my_licenses(
    user: dict = Depends(require_user),
    db: Session = Depends(get_db),
    include_inactive: bool = Query(False),
):
    where_sql = "l.buyer_id = :b"
    params: Dict[str, Any] = {"b": int(user["user_id"])}
    if not include_inactive:
        where_sql += " and l.is_active = :active"
        params["active"] = True

    rows = db.execute(
        text(f"""
            select l.id, l.license_key, l.template_id, t.title, l.order_id, l.license_type,
                   l.is_active, l.created_at
              from licenses l
              join templates t on t.id = l.template_id
             where {where_sql}
             order by l.id desc
        """),
        params,
    ).fetchall()

    return {
        "ok": True,
        "items": [
            {
                "id": int(r[0]),
                "license_key": r[1],
                "template_id": int(r[2]),
                "template_title": r[3],
                "order_id": int(r[4]),
                "license_type": r[5],
                "is_active": bool(r[6]),
                "created_at": str(r[7]) if r[7] else None,
            }
            for r in rows
        ],
    }
