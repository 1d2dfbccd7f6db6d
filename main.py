import logging
from datetime import date
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import SessionLocal, init_db
from models import DateBasis, NotificationType, User
from periods import Period, resolve_period
from report_cache import ReportCacheService
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AnnouncementIn,
    CategoryBudgetIn,
    CategoryIn,
    IpBlockIn,
    IpBlockOut,
    IpBlockUpdate,
    NotificationOut,
    NotificationSettingsIn,
    PostingIn,
    PostingOut,
)
from services import (
    AccountService,
    BudgetReportService,
    CategoryService,
    IpBlockService,
    NotificationService,
    NotificationWriter,
    PostingFilters,
    PostingService,
    UserService,
    get_current_user_id,
)
from tasks import TaskType, build_task_manager


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Manager")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


task_manager = build_task_manager()
scheduler_manager = SchedulerManager(task_manager)


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def client_ip(request: Request) -> Optional[str]:
    # peer address only; uvicorn rewrites it from proxy headers for trusted proxies
    return request.client.host if request.client else None


def _ip_is_blocked(ip_address: str) -> bool:
    db = SessionLocal()
    try:
        return IpBlockService(db).is_blocked(ip_address)
    finally:
        db.close()


@app.middleware("http")
async def reject_blocked_ips(request: Request, call_next):
    ip_address = client_ip(request)
    if ip_address:
        blocked = await run_in_threadpool(_ip_is_blocked, ip_address)
        if blocked:
            logger.info(f"ip_rejected: ip={ip_address} path={request.url.path}")
            return JSONResponse(
                status_code=403, content={"detail": "Access from this IP is blocked"}
            )
    return await call_next(request)


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> PostingFilters:
    def _int(name: str) -> Optional[int]:
        raw = request.query_params.get(name)
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc

    return PostingFilters(
        account_id=_int("account_id"),
        category_id=_int("category_id"),
        query=request.query_params.get("q") or None,
    )


def require_admin(db: Session = Depends(get_db)) -> User:
    user = db.get(User, get_current_user_id())
    if not user or not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user


def require_csrf(request: Request) -> None:
    token = request.headers.get("x-csrf-token", "")
    if not validate_csrf_token(token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"csrf_token": generate_csrf_token(get_current_user_id())}


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    return [
        {"id": account.id, "name": account.name, "iban": account.iban}
        for account in AccountService(db).list_all()
    ]


@app.post("/api/accounts", status_code=201)
def api_create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": account.id, "name": account.name, "iban": account.iban}


@app.put("/api/accounts/{account_id}")
def api_update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    service = AccountService(db)
    try:
        service.get(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        account = service.update(account_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": account.id, "name": account.name, "iban": account.iban}


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(account_id: int, db: Session = Depends(get_db)):
    service = AccountService(db)
    try:
        service.get(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        service.delete(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _category_json(category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "monthly_budget_cents": category.monthly_budget_cents,
        "archived": category.archived_at is not None,
    }


@app.get("/api/categories")
def api_categories(include_archived: bool = False, db: Session = Depends(get_db)):
    return [
        _category_json(category)
        for category in CategoryService(db).list_all(include_archived=include_archived)
    ]


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _category_json(category)


@app.put("/api/categories/{category_id}/budget")
def api_set_category_budget(
    category_id: int, data: CategoryBudgetIn, db: Session = Depends(get_db)
):
    service = CategoryService(db)
    try:
        service.get(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    category = service.set_budget(category_id, data.monthly_budget_cents)
    return _category_json(category)


@app.post("/api/categories/{category_id}/archive")
def api_archive_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).archive(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.post("/api/categories/{category_id}/restore")
def api_restore_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).restore(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.get("/api/postings/export.csv")
def export_postings_endpoint(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    csv_text = PostingService(db).export_csv(period, filters)
    filename = f"postings_{period.start}_{period.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/postings")
def api_postings(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    try:
        page = max(int(request.query_params.get("page", "1")), 1)
        limit = min(max(int(request.query_params.get("limit", "50")), 1), 100)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid paging") from exc
    offset = (page - 1) * limit
    items = PostingService(db).list(period, filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]

    return {
        "items": [
            PostingOut.model_validate(posting).model_dump(mode="json")
            for posting in items
        ],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/postings", status_code=201, response_model=PostingOut)
def api_create_posting(data: PostingIn, db: Session = Depends(get_db)):
    try:
        return PostingService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/postings/{posting_id}", response_model=PostingOut)
def api_get_posting(posting_id: int, db: Session = Depends(get_db)):
    try:
        return PostingService(db).get(posting_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/postings/{posting_id}", response_model=PostingOut)
def api_update_posting(posting_id: int, data: PostingIn, db: Session = Depends(get_db)):
    service = PostingService(db)
    try:
        service.get(posting_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        return service.update(posting_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/postings/{posting_id}", status_code=204)
def api_delete_posting(posting_id: int, db: Session = Depends(get_db)):
    try:
        PostingService(db).delete(posting_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/reports/budget")
def api_budget_report(
    start: date,
    end: date,
    basis: DateBasis = DateBasis.booking_date,
    ignore_cache: bool = False,
    db: Session = Depends(get_db),
):
    try:
        data = BudgetReportService(db).get_raw_data(
            start, end, basis, ignore_cache=ignore_cache
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return data.model_dump(mode="json")


@app.post("/api/report-cache/mark-all")
def api_mark_report_cache(db: Session = Depends(get_db)):
    marked = ReportCacheService(db).mark_all_entries_for_update(get_current_user_id())
    return {"marked": marked}


@app.delete("/api/report-cache")
def api_clear_report_cache(db: Session = Depends(get_db)):
    removed = ReportCacheService(db).clear(get_current_user_id())
    return {"removed": removed}


@app.post("/api/report-cache/refresh", status_code=202)
def api_refresh_report_cache(background_tasks: BackgroundTasks):
    status = task_manager.enqueue(
        TaskType.refresh_report_cache, get_current_user_id()
    )
    background_tasks.add_task(task_manager.run, status.id)
    return status


@app.get("/api/tasks/{task_id}")
def api_task_status(task_id: str):
    status = task_manager.get(task_id)
    if status is None or status.user_id not in (get_current_user_id(), None):
        raise HTTPException(status_code=404, detail="Task not found")
    return status


@app.post("/api/tasks/{task_id}/cancel")
def api_cancel_task(task_id: str):
    status = task_manager.get(task_id)
    if status is None or status.user_id != get_current_user_id():
        raise HTTPException(status_code=404, detail="Task not found")
    return {"cancelled": task_manager.cancel(task_id)}


@app.get("/api/notifications", response_model=list[NotificationOut])
def api_notifications(db: Session = Depends(get_db)):
    return NotificationService(db).list_active()


@app.post("/api/notifications/{notification_id}/dismiss")
def api_dismiss_notification(notification_id: int, db: Session = Depends(get_db)):
    if not NotificationService(db).dismiss(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"ok": True}


@app.put("/api/users/me/notification-settings")
def api_notification_settings(
    data: NotificationSettingsIn, db: Session = Depends(get_db)
):
    service = UserService(db)
    try:
        service.get()
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        user = service.update_notification_settings(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "monthly_reminder_enabled": user.monthly_reminder_enabled,
        "monthly_reminder_hour": user.monthly_reminder_hour,
        "monthly_reminder_minute": user.monthly_reminder_minute,
        "timezone": user.timezone,
        "holiday_country_code": user.holiday_country_code,
        "holiday_subdivision_code": user.holiday_subdivision_code,
        "holiday_provider_kind": user.holiday_provider_kind.value,
    }


@app.get("/api/admin/ip-blocks", response_model=list[IpBlockOut])
def api_ip_blocks(
    only_blocked: bool = False,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    return IpBlockService(db).list(only_blocked=only_blocked)


@app.post(
    "/api/admin/ip-blocks",
    status_code=201,
    response_model=IpBlockOut,
    dependencies=[Depends(require_csrf)],
)
def api_create_ip_block(
    data: IpBlockIn,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    try:
        return IpBlockService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post(
    "/api/admin/ip-blocks/by-address",
    response_model=IpBlockOut,
    dependencies=[Depends(require_csrf)],
)
def api_block_ip_address(
    data: IpBlockIn,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    block = IpBlockService(db).block_by_address(data.ip_address, data.reason)
    if block is None:
        raise HTTPException(status_code=400, detail="IP address cannot be empty")
    return block


@app.post(
    "/api/admin/notifications",
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def api_create_announcement(
    data: AnnouncementIn,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    NotificationWriter(db).create_global(
        data.title.strip(),
        data.message.strip(),
        NotificationType.system_alert,
        data.scheduled_date or date.today(),
    )
    return {"ok": True}


def _ip_block_action(db: Session, block_id: int, action: str, body=None):
    service = IpBlockService(db)
    try:
        if action == "update":
            return service.update(block_id, body)
        if action == "block":
            return service.block(block_id, body)
        if action == "unblock":
            return service.unblock(block_id)
        if action == "reset":
            return service.reset_counters(block_id)
        service.delete(block_id)
        return None
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch(
    "/api/admin/ip-blocks/{block_id}",
    response_model=IpBlockOut,
    dependencies=[Depends(require_csrf)],
)
def api_update_ip_block(
    block_id: int,
    data: IpBlockUpdate,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    return _ip_block_action(db, block_id, "update", data)


@app.post(
    "/api/admin/ip-blocks/{block_id}/block",
    response_model=IpBlockOut,
    dependencies=[Depends(require_csrf)],
)
def api_block_ip(
    block_id: int,
    reason: Optional[str] = None,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    return _ip_block_action(db, block_id, "block", reason)


@app.post(
    "/api/admin/ip-blocks/{block_id}/unblock",
    response_model=IpBlockOut,
    dependencies=[Depends(require_csrf)],
)
def api_unblock_ip(
    block_id: int,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    return _ip_block_action(db, block_id, "unblock")


@app.post(
    "/api/admin/ip-blocks/{block_id}/reset-counters",
    response_model=IpBlockOut,
    dependencies=[Depends(require_csrf)],
)
def api_reset_ip_counters(
    block_id: int,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    return _ip_block_action(db, block_id, "reset")


@app.delete(
    "/api/admin/ip-blocks/{block_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def api_delete_ip_block(
    block_id: int,
    db: Session = Depends(get_db),
    _admin: User = Depends(require_admin),
):
    _ip_block_action(db, block_id, "delete")


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        proxy_headers=True,
        forwarded_allow_ips=settings.trusted_proxies,
    )


if __name__ == "__main__":
    main()
