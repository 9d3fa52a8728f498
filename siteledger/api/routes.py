"""HTTP routes for the SiteLedger API."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from siteledger.api.models import (
    ConsolidateResponse,
    EntryRequest,
    ErrorResponse,
    GroupEntryRequest,
    GroupEntryResponse,
    MergeRequest,
    OpenAccountRequest,
    OperationResponse,
    PaymentRequest,
    RebuildRequest,
    RebuildResponse,
    RegisterGroupRequest,
    TransactionRequest,
)
from siteledger.errors import ERROR_STATUS_CODES
from siteledger.models import (
    Entry,
    FifoViolation,
    InterSiteBalance,
    LedgerAccount,
    Payment,
    SiteGroup,
    Transaction,
)
from siteledger.rebuilder import RebuildResult
from siteledger.sdk import OperationResult, SiteLedgerSDK


router = APIRouter()


def get_sdk(req: Request) -> SiteLedgerSDK:
    sdk = getattr(req.app.state, "sdk", None)
    if sdk is None:
        raise RuntimeError("SDK not initialized")
    return sdk


def _error(error_code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error_code=error_code, message=message)
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(error_code, 400), content=body.model_dump())


def _operation(result: OperationResult):
    if not result.success:
        return _error(result.error_code, result.error_message)
    return OperationResponse(
        success=True,
        operation=result.operation,
        affected_count=result.affected_count,
        record=result.record.model_dump(mode="json") if result.record is not None else None,
    )


def _rebuild(result: RebuildResult) -> RebuildResponse:
    return RebuildResponse(
        success=result.success,
        scope_key=result.scope.key,
        account_id=result.scope.account_id,
        site_id=result.scope.site_id,
        affected_count=result.affected_count,
        surplus=result.surplus,
        violations=result.violations,
        mismatches=[ErrorResponse(**m.to_dict()) for m in result.mismatches],
        applications=result.applications,
        error_code=result.error_code,
        error_message=result.error_message,
    )


# ------- Groups & Accounts -------

@router.post("/groups", response_model=SiteGroup)
def register_group(payload: RegisterGroupRequest, sdk: SiteLedgerSDK = Depends(get_sdk)) -> SiteGroup:
    try:
        return sdk.register_group(payload.site_ids, group_id=payload.group_id, name=payload.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/groups/{group_id}", response_model=SiteGroup)
def get_group(group_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> SiteGroup:
    group = sdk.get_group(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Site group not found")
    return group


@router.post("/accounts", response_model=LedgerAccount)
def open_account(payload: OpenAccountRequest, sdk: SiteLedgerSDK = Depends(get_sdk)) -> LedgerAccount:
    try:
        return sdk.open_account(payload.resource_id, payload.group_id, account_id=payload.account_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/accounts", response_model=List[LedgerAccount])
def list_accounts(group_id: Optional[str] = None, sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[LedgerAccount]:
    return sdk.list_accounts(group_id)


@router.get("/accounts/{account_id}", response_model=LedgerAccount)
def get_account(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)):
    account = sdk.get_account(account_id)
    if account is None:
        return _error("UNKNOWN_ACCOUNT", f"Ledger account {account_id} not found")
    return account


# ------- Inventory Ledger -------

@router.post("/accounts/{account_id}/transactions", response_model=OperationResponse)
def record_transaction(account_id: str, payload: TransactionRequest, sdk: SiteLedgerSDK = Depends(get_sdk)):
    res = sdk.record_transaction(
        account_id,
        payload.transaction_type,
        payload.quantity,
        payload.transaction_date,
        unit_cost=payload.unit_cost,
        reference_id=payload.reference_id,
        site_id=payload.site_id,
        paid_by_site_id=payload.paid_by_site_id,
    )
    return _operation(res)


@router.get("/accounts/{account_id}/transactions", response_model=List[Transaction])
def list_transactions(account_id: str, include_voided: bool = True,
                      sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[Transaction]:
    return sdk.get_transactions(account_id, include_voided=include_voided)


@router.post("/transactions/{transaction_id}/void", response_model=OperationResponse)
def void_transaction(transaction_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)):
    return _operation(sdk.void_transaction(transaction_id))


@router.post("/accounts/{account_id}/recompute", response_model=OperationResponse)
def recompute_balance(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)):
    return _operation(sdk.recompute_balance(account_id))


@router.post("/accounts/{account_id}/merge", response_model=OperationResponse)
def merge_accounts(account_id: str, payload: MergeRequest, sdk: SiteLedgerSDK = Depends(get_sdk)):
    return _operation(sdk.merge_accounts(account_id, payload.duplicate_ids))


@router.post("/accounts/{account_id}/consolidate", response_model=ConsolidateResponse)
def consolidate(account_id: str, payload: MergeRequest, sdk: SiteLedgerSDK = Depends(get_sdk)):
    res = sdk.consolidate(account_id, payload.duplicate_ids)
    if not res.success:
        return _error(res.error_code, res.error_message)
    return ConsolidateResponse(
        success=True,
        operation=res.operation,
        affected_count=res.affected_count,
        record=res.record.model_dump(mode="json"),
        rebuilds=[_rebuild(r) for r in res.rebuilds],
    )


@router.get("/accounts/{account_id}/inter-site-balances", response_model=List[InterSiteBalance])
def inter_site_balances(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[InterSiteBalance]:
    return sdk.inter_site_balances(account_id)


# ------- Entries -------

@router.post("/accounts/{account_id}/entries", response_model=Entry)
def add_entry(account_id: str, payload: EntryRequest, sdk: SiteLedgerSDK = Depends(get_sdk)) -> Entry:
    return sdk.add_entry(account_id, payload.entry_date, payload.amount,
                         site_id=payload.site_id, entry_id=payload.entry_id)


@router.post("/accounts/{account_id}/group-entries", response_model=GroupEntryResponse)
def add_group_entry(account_id: str, payload: GroupEntryRequest,
                    sdk: SiteLedgerSDK = Depends(get_sdk)) -> GroupEntryResponse:
    entry = sdk.add_group_entry(account_id, payload.entry_date, payload.amount,
                                weights=payload.weights, allocations=payload.allocations,
                                entry_id=payload.entry_id)
    return GroupEntryResponse(entry=entry, allocations=sdk.get_allocations(entry.entry_id))


@router.get("/accounts/{account_id}/entries", response_model=List[Entry])
def list_entries(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[Entry]:
    return sdk.list_entries(account_id)


@router.get("/entries/{entry_id}", response_model=GroupEntryResponse)
def get_entry(entry_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> GroupEntryResponse:
    entry = sdk.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    return GroupEntryResponse(entry=entry, allocations=sdk.get_allocations(entry_id))


@router.post("/entries/{entry_id}/void", response_model=Entry)
def void_entry(entry_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> Entry:
    return sdk.void_entry(entry_id)


# ------- Payments -------

@router.post("/accounts/{account_id}/payments", response_model=Payment)
def add_payment(account_id: str, payload: PaymentRequest, sdk: SiteLedgerSDK = Depends(get_sdk)) -> Payment:
    return sdk.add_payment(account_id, payload.payment_date, payload.amount,
                           site_id=payload.site_id, payment_id=payload.payment_id)


@router.get("/accounts/{account_id}/payments", response_model=List[Payment])
def list_payments(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[Payment]:
    return sdk.list_payments(account_id)


@router.post("/payments/{payment_id}/cancel", response_model=Payment)
def cancel_payment(payment_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> Payment:
    return sdk.cancel_payment(payment_id)


# ------- Waterfall -------

@router.post("/accounts/{account_id}/rebuild", response_model=RebuildResponse)
def rebuild(account_id: str, payload: Optional[RebuildRequest] = None, sdk: SiteLedgerSDK = Depends(get_sdk)):
    res = sdk.rebuild(account_id, site_id=payload.site_id if payload else None)
    if not res.success:
        return _error(res.error_code, res.error_message)
    return _rebuild(res)


@router.post("/accounts/{account_id}/rebuild-all", response_model=List[RebuildResponse])
def rebuild_account(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[RebuildResponse]:
    return [_rebuild(r) for r in sdk.rebuild_account(account_id)]


@router.get("/accounts/{account_id}/fifo-violations", response_model=List[FifoViolation])
def fifo_violations(account_id: str, site_id: Optional[str] = None,
                    sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[FifoViolation]:
    return sdk.find_fifo_violations(account_id, site_id=site_id)


@router.get("/accounts/{account_id}/allocation-mismatches", response_model=List[ErrorResponse])
def allocation_mismatches(account_id: str, sdk: SiteLedgerSDK = Depends(get_sdk)) -> List[ErrorResponse]:
    return [ErrorResponse(**m.to_dict()) for m in sdk.check_allocation_splits(account_id)]
