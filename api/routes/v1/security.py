"""
api/routes/v1/security.py -- Login history for the signed-in user.

Routes:
  GET /api/v1/security/login-history?page=1&limit=20&filter=all|success|failed

The filter narrows the records and the pagination total. The stats block
(successful_logins / failed_attempts) always covers the whole history so the
summary cards on the security page do not change when the filter does.

Users only ever see their own attempts: user_id comes from the session, never
from the query string.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import LoginHistoryData, SuccessResponse
from audit.models import HistoryFilter
from audit.recorder import MAX_PAGE_SIZE, LoginAuditRecorder
from auth.dependencies import CurrentSession, get_current_session

router = APIRouter()


@router.get("/security/login-history", response_model=SuccessResponse[LoginHistoryData])
def login_history(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    filter: HistoryFilter = Query(default=HistoryFilter.ALL),  # noqa: A002 -- public query param name
    current: CurrentSession = Depends(get_current_session),
) -> SuccessResponse[LoginHistoryData]:
    recorder: LoginAuditRecorder = request.app.state.audit_recorder
    history = recorder.query(current.user.id, page=page, page_size=limit, history_filter=filter)
    return SuccessResponse[LoginHistoryData](data=LoginHistoryData.from_page(history))
