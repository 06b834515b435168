"""
Order Service — FastAPI エントリーポイント

QRStock の発注書 API。

- /api/*        : 画面向けの API。bulk-create は失敗をすべて {ok: false, error} に変換する
- /commands/*   : 発注書を変更するコマンド。例外は例外ハンドラまで伝播させる
- /api/orders   : 画面用の読み取り。from パラメータから戻り先を決め、
                  遷移先リンクには from を付けて返す

接続（DB・Redis・ID プロバイダ）は Resources としてプロセス起動時に一度だけ作り、
app.state.resources から参照する。
"""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import cache, commands, queries
from .config import Settings
from .database import Resources
from .errors import OrderNotFound, QRStockError
from .events import Actor
from .navigation import get_from, link_with_from

logger = logging.getLogger(__name__)

router = APIRouter()


def get_resources(request: Request) -> Resources:
    return request.app.state.resources


async def handle_qrstock_error(request: Request, exc: QRStockError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=exc.status_code)


def create_app(
    settings: Settings | None = None,
    resources: Resources | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    resources を渡さなければ lifespan で Settings から構築し、終了時に閉じる。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.resources is None
        if owned:
            app.state.resources = Resources.from_settings(settings or Settings.from_env())
        await app.state.resources.create_schema()
        yield
        if owned:
            await app.state.resources.aclose()
            app.state.resources = None

    app = FastAPI(title="QRStock Order Service", lifespan=lifespan)
    app.state.resources = resources
    app.add_exception_handler(QRStockError, handle_qrstock_error)
    app.include_router(router)
    return app


# ── Request Models ───────────────────────────────

class UpdateItemsRequest(BaseModel):
    items: list[dict]
    actor: Actor


class ReceiveItemRequest(BaseModel):
    product_id: str
    quantity: float
    location_id: str
    actor: Actor


class UpdateMetaRequest(BaseModel):
    actor: Actor
    note: str | None = None
    supplier_name: str | None = None


class CancelRequest(BaseModel):
    actor: Actor
    reason: str = ""


class ArchiveRequest(BaseModel):
    actor: Actor


# ── 画面向け API ─────────────────────────────────

@router.get("/api/_env-check")
async def env_check():
    """デプロイ診断用: 認証情報の環境変数があるかだけを返す"""
    return {
        "hasGac": bool(os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")),
        "hasFsk": bool(os.environ.get("FIREBASE_SERVICE_ACCOUNT_KEY")),
    }


@router.post("/api/orders/bulk-create")
async def bulk_create_order(
    request: Request,
    resources: Resources = Depends(get_resources),
):
    """
    下書き発注書の一括作成

    uid が無ければ 401 UID_MISSING、items が空なら 400 NO_ITEMS。
    それ以外の失敗（ユーザー不明・有効な明細なしを含む）はすべて 500。
    uid で ID プロバイダからユーザーを引き、下書きとして作成する。
    """
    try:
        body = await request.json()
        uid = str(body.get("uid") or "")
        items = body.get("items") if isinstance(body.get("items"), list) else []

        if not uid:
            return JSONResponse({"ok": False, "error": "UID_MISSING"}, status_code=401)
        if not items:
            return JSONResponse({"ok": False, "error": "NO_ITEMS"}, status_code=400)

        actor = await resources.identity.get_user(uid, role="purchaser")
        user_info = body.get("userInfo") or {}
        if isinstance(user_info, dict):
            actor = actor.model_copy(update={
                "display_name": actor.display_name or user_info.get("displayName"),
                "email": actor.email or user_info.get("email"),
            })

        async with resources.session() as session:
            result = await commands.create_purchase_order(
                session, resources.redis, uid, items, actor, status="draft"
            )
        return {"ok": True, "data": result}
    except Exception as e:
        logger.exception("Bulk create of purchase order failed")
        return JSONResponse(
            {"ok": False, "error": str(e) or "BULK_CREATE_PO_FAILED"},
            status_code=500,
        )


@router.get("/api/orders")
async def orders_page(request: Request, resources: Resources = Depends(get_resources)):
    """発注書一覧ページ"""
    async with resources.session() as session:
        orders = await cache.cached_page(
            resources.redis,
            "/orders",
            lambda: queries.list_orders(session),
            ttl=resources.page_cache_ttl,
        )
    query = request.url.query
    return {
        "back": get_from(request.query_params, "/"),
        "orders": [
            {**o, "href": link_with_from(f"/orders/{o['id']}", "/orders", query)}
            for o in orders
        ],
    }


@router.get("/api/orders/{order_id}")
async def order_page(
    order_id: str,
    request: Request,
    resources: Resources = Depends(get_resources),
):
    """発注書詳細ページ"""
    async with resources.session() as session:
        order = await cache.cached_page(
            resources.redis,
            f"/orders/{order_id}",
            lambda: queries.get_order(session, order_id),
            ttl=resources.page_cache_ttl,
        )
    if order is None:
        raise OrderNotFound(order_id)
    here = f"/orders/{order_id}"
    query = request.url.query
    return {
        "back": get_from(request.query_params, "/orders"),
        "order": order,
        "links": {
            "edit": link_with_from(f"{here}/edit", here, query),
            "events": link_with_from(f"{here}/events", here, query),
        },
    }


@router.get("/api/orders/{order_id}/events")
async def order_events_page(
    order_id: str,
    request: Request,
    resources: Resources = Depends(get_resources),
):
    """発注書の監査履歴ページ"""
    async with resources.session() as session:
        events = await queries.list_order_events(session, order_id)
    return {
        "back": get_from(request.query_params, f"/orders/{order_id}"),
        "events": events,
    }


# ── Command Endpoints (書き込み側) ───────────────

@router.post("/commands/orders/{order_id}/items")
async def cmd_update_items(
    order_id: str,
    req: UpdateItemsRequest,
    resources: Resources = Depends(get_resources),
):
    """明細更新コマンド (updateOrderItemsAction)"""
    async with resources.session() as session:
        return await commands.update_order_items(
            session, resources.redis, order_id, req.items, req.actor
        )


@router.post("/commands/orders/{order_id}/receive")
async def cmd_receive_item(
    order_id: str,
    req: ReceiveItemRequest,
    resources: Resources = Depends(get_resources),
):
    """入荷コマンド"""
    async with resources.session() as session:
        return await commands.receive_order_item(
            session, resources.redis, order_id,
            req.product_id, req.quantity, req.location_id, req.actor,
        )


@router.post("/commands/orders/{order_id}/meta")
async def cmd_update_meta(
    order_id: str,
    req: UpdateMetaRequest,
    resources: Resources = Depends(get_resources),
):
    async with resources.session() as session:
        return await commands.update_order_meta(
            session, resources.redis, order_id, req.actor,
            note=req.note, supplier_name=req.supplier_name,
        )


@router.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: str,
    req: CancelRequest,
    resources: Resources = Depends(get_resources),
):
    """発注キャンセルコマンド"""
    async with resources.session() as session:
        return await commands.cancel_order(
            session, resources.redis, order_id, req.actor, req.reason
        )


@router.post("/commands/orders/{order_id}/archive")
async def cmd_archive_order(
    order_id: str,
    req: ArchiveRequest,
    resources: Resources = Depends(get_resources),
):
    async with resources.session() as session:
        return await commands.archive_order(session, resources.redis, order_id, req.actor)


@router.delete("/commands/orders/{order_id}")
async def cmd_hard_delete_order(
    order_id: str,
    resources: Resources = Depends(get_resources),
):
    """物理削除コマンド（監査イベントは残る）"""
    async with resources.session() as session:
        await commands.hard_delete_order(session, resources.redis, order_id)
    return {"ok": True, "deleted": True}


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


app = create_app()


def run() -> None:
    """uvicorn でサービスを起動する。HOST / PORT 環境変数で待ち受け先を変えられる。"""
    uvicorn.run(
        "app.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
