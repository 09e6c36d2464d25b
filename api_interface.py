# api_interface.py - 账单台账 / 自动分群 / 提现接口
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

import uvicorn
from fastapi import FastAPI, HTTPException, Depends, Query, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from backfill import backfill_related_group_id
from config import (
    LOG_FILE, BillType, SettlementStatus, WithdrawalStatus, DEFAULT_PAGE, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE,
)
from database_setup import get_db_session, get_engine, DatabaseManager
from exceptions import (
    LedgerException, NotFound, AlreadyResolved, DuplicateBillNo, ImmutableFieldViolation,
    InvalidStatusTransition, SubmissionNotPending,
)
from group_assignor import GroupAssignor
from ledger_store import LedgerStore
from messages import render, resolve_lang
from settlement import SettlementOrchestrator
from withdrawal_reconciler import WithdrawalReconciler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE, encoding='utf-8'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

ERROR_STATUS = {
    NotFound: 404,
    AlreadyResolved: 409,
    DuplicateBillNo: 409,
    ImmutableFieldViolation: 409,
    InvalidStatusTransition: 409,
    SubmissionNotPending: 409,
}


class ResponseModel(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None


class TaskApprovalRequest(BaseModel):
    task_id: int = Field(..., gt=0)
    member_id: int = Field(..., gt=0)


class BatchApproveRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1)
    waiter_id: Optional[int] = None

    @field_validator('ids')
    @classmethod
    def validate_ids(cls, v):
        if any(i <= 0 for i in v):
            raise ValueError("ID必须为正整数")
        return v


class WithdrawalRequest(BaseModel):
    member_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class WithdrawalResolveRequest(BaseModel):
    outcome: str = Field(..., pattern=r'^(success|failed)$')
    reason: Optional[str] = Field(None, max_length=255)


class WithdrawalBatchResolveRequest(WithdrawalResolveRequest):
    ids: List[int] = Field(..., min_length=1)


app = FastAPI(
    title="账单台账与群组结算API",
    description="任务奖励/邀请奖励/群主收益结算 + 自动分群 + 提现对账",
    version=API_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_lang(accept_language: Optional[str] = Header(None)) -> str:
    return resolve_lang(accept_language)


def get_ledger_engine():
    return get_engine()


def get_ledger_store(session: Session = Depends(get_db_session)) -> LedgerStore:
    return LedgerStore(session)


def get_settlement(session: Session = Depends(get_db_session)) -> SettlementOrchestrator:
    return SettlementOrchestrator(session)


def get_assignor(session: Session = Depends(get_db_session)) -> GroupAssignor:
    return GroupAssignor(session)


def get_reconciler(session: Session = Depends(get_db_session)) -> WithdrawalReconciler:
    return WithdrawalReconciler(session)


def _ledger_error(e: LedgerException, lang: str) -> HTTPException:
    status_code = ERROR_STATUS.get(type(e), 400)
    return HTTPException(
        status_code=status_code,
        detail={"reason_code": e.reason_code, "message": render(e.reason_code, e.params, lang), "params": e.params}
    )


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode='json')


@app.get("/", summary="系统状态")
async def root():
    return {"message": "账单台账API运行中", "version": API_VERSION}


@app.post("/api/init", response_model=ResponseModel, summary="初始化数据库")
async def init_database(engine=Depends(get_ledger_engine)):
    try:
        db_manager = DatabaseManager(engine)
        with engine.connect() as conn:
            with conn.begin():
                db_manager.init_all_tables(conn)
        return ResponseModel(success=True, message="数据库初始化成功")
    except Exception as e:
        logger.error(f"数据库初始化失败: {e}")
        raise HTTPException(status_code=500, detail=f"初始化失败: {e}")


@app.post("/api/settlements/task-approval", response_model=ResponseModel, summary="任务审核结算")
async def settle_task_approval(
        request: TaskApprovalRequest,
        service: SettlementOrchestrator = Depends(get_settlement),
        lang: str = Depends(get_lang)
):
    try:
        bills = service.settle_task_approval(request.task_id, request.member_id)
        return ResponseModel(success=True, message="结算成功", data={"bills": [_dump(b) for b in bills]})
    except LedgerException as e:
        raise _ledger_error(e, lang)
    except Exception as e:
        logger.error(f"任务结算失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/submitted-tasks/approve", response_model=ResponseModel, summary="批量审核通过任务提交")
async def approve_submitted_tasks(
        request: BatchApproveRequest,
        service: SettlementOrchestrator = Depends(get_settlement),
        lang: str = Depends(get_lang)
):
    try:
        batch = service.batch_approve_submitted_tasks(request.ids, request.waiter_id)
        for item in batch.results:
            if not item["success"]:
                item["message"] = render(item["reason_code"], item["params"], lang)
        message = render('taskAuditSuccess', {"success": batch.success, "failed": batch.failed}, lang)
        return ResponseModel(success=True, message=message, data=_dump(batch))
    except Exception as e:
        logger.error(f"批量审核任务失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/accounts/approve", response_model=ResponseModel, summary="批量审核通过账号（自动分群）")
async def approve_accounts(
        request: BatchApproveRequest,
        service: GroupAssignor = Depends(get_assignor),
        lang: str = Depends(get_lang)
):
    try:
        batch = service.approve_accounts(request.ids, request.waiter_id)
        for item in batch.results:
            item["message"] = render(item["reason_code"], item["params"], lang)
        message = render('auditSuccess', {"success": batch.success, "failed": batch.failed}, lang)
        return ResponseModel(success=True, message=message, data=_dump(batch))
    except Exception as e:
        logger.error(f"批量审核账号失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/members/{member_id}/assign-group", response_model=ResponseModel, summary="自动分配群组")
async def assign_group(
        member_id: int,
        service: GroupAssignor = Depends(get_assignor),
        lang: str = Depends(get_lang)
):
    try:
        assignment = service.assign(member_id)
        data = _dump(assignment)
        data["assigned"] = assignment.assigned
        return ResponseModel(
            success=assignment.assigned,
            message=render(assignment.reason.value, assignment.params, lang),
            data=data
        )
    except LedgerException as e:
        raise _ledger_error(e, lang)
    except Exception as e:
        logger.error(f"自动分群失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/withdrawals", response_model=ResponseModel, summary="申请提现")
async def request_withdrawal(
        request: WithdrawalRequest,
        service: WithdrawalReconciler = Depends(get_reconciler),
        lang: str = Depends(get_lang)
):
    try:
        withdrawal = service.request_withdrawal(request.member_id, request.amount)
        return ResponseModel(success=True, message="提现申请已提交", data=_dump(withdrawal))
    except LedgerException as e:
        raise _ledger_error(e, lang)
    except Exception as e:
        logger.error(f"提现申请失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.patch("/api/withdrawals/{withdrawal_id}/resolve", response_model=ResponseModel, summary="处理提现")
async def resolve_withdrawal(
        withdrawal_id: int,
        request: WithdrawalResolveRequest,
        service: WithdrawalReconciler = Depends(get_reconciler),
        lang: str = Depends(get_lang)
):
    try:
        withdrawal = service.resolve(withdrawal_id, WithdrawalStatus(request.outcome), request.reason)
        return ResponseModel(success=True, message="提现处理完成", data=_dump(withdrawal))
    except LedgerException as e:
        raise _ledger_error(e, lang)
    except Exception as e:
        logger.error(f"提现处理失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/withdrawals/batch-resolve", response_model=ResponseModel, summary="批量处理提现")
async def batch_resolve_withdrawals(
        request: WithdrawalBatchResolveRequest,
        service: WithdrawalReconciler = Depends(get_reconciler),
        lang: str = Depends(get_lang)
):
    try:
        batch = service.batch_resolve(request.ids, WithdrawalStatus(request.outcome), request.reason)
        for item in batch.results:
            if not item["success"]:
                item["message"] = render(item["reason_code"], item["params"], lang)
        message = render('withdrawalBatchSuccess', {"success": batch.success, "failed": batch.failed}, lang)
        return ResponseModel(success=True, message=message, data=_dump(batch))
    except Exception as e:
        logger.error(f"批量处理提现失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/bills", response_model=ResponseModel, summary="账单列表")
async def list_bills(
        member_id: Optional[int] = Query(None, gt=0),
        bill_type: Optional[BillType] = Query(None),
        settlement_status: Optional[SettlementStatus] = Query(None),
        start_time: Optional[str] = Query(None, description="YYYY-MM-DD HH:MM:SS"),
        end_time: Optional[str] = Query(None, description="YYYY-MM-DD HH:MM:SS"),
        page: int = Query(DEFAULT_PAGE, ge=1),
        page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        ledger: LedgerStore = Depends(get_ledger_store)
):
    try:
        result = ledger.list_bills(
            member_id=member_id,
            bill_type=bill_type.value if bill_type else None,
            settlement_status=settlement_status.value if settlement_status else None,
            start_time=start_time,
            end_time=end_time,
            page=page,
            page_size=page_size
        )
        result["list"] = [_dump(b) for b in result["list"]]
        return ResponseModel(success=True, message="查询成功", data=result)
    except Exception as e:
        logger.error(f"查询账单失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/withdrawals", response_model=ResponseModel, summary="提现列表")
async def list_withdrawals(
        member_id: Optional[int] = Query(None, gt=0),
        withdrawal_status: Optional[WithdrawalStatus] = Query(None),
        page: int = Query(DEFAULT_PAGE, ge=1),
        page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        service: WithdrawalReconciler = Depends(get_reconciler)
):
    try:
        result = service.list_withdrawals(
            member_id=member_id,
            withdrawal_status=withdrawal_status.value if withdrawal_status else None,
            page=page,
            page_size=page_size
        )
        result["list"] = [_dump(w) for w in result["list"]]
        return ResponseModel(success=True, message="查询成功", data=result)
    except Exception as e:
        logger.error(f"查询提现失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/members/{member_id}/balance", response_model=ResponseModel, summary="查询可用余额")
async def get_member_balance(
        member_id: int,
        ledger: LedgerStore = Depends(get_ledger_store),
        lang: str = Depends(get_lang)
):
    try:
        balance = ledger.get_balance(member_id)
        return ResponseModel(success=True, message="查询成功", data={
            "member_id": member_id,
            "balance": f"{balance:.2f}"
        })
    except LedgerException as e:
        raise _ledger_error(e, lang)
    except Exception as e:
        logger.error(f"查询余额失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/maintenance/backfill-related-group", response_model=ResponseModel, summary="补全账单关联群组")
async def backfill_related_group(session: Session = Depends(get_db_session)):
    try:
        counts = backfill_related_group_id(session)
        return ResponseModel(success=True, message="修复完成", data=counts)
    except Exception as e:
        logger.error(f"补全关联群组失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
