"""API routes for PitchDesk.

Callers are authenticated upstream; the gateway forwards the resolved
identity as ``X-Profile-Id`` / ``X-User-Type`` headers.
"""
import csv
import io
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from pitchdesk.agents.scheduler import get_last_result, get_scheduler, run_expiry_sweep
from pitchdesk.core.errors import Forbidden
from pitchdesk.models.schemas import (
    AgentInterest, Caller, Contract, ContractActionRequest, ContractCreate, ContractWorkflowStep,
    DealStage, InterestRequest, Message, MessageCreate, MessageType, Notification, Pitch,
    PitchCreate, PitchFilters, ShortlistEntry, TransferType, UserType,
)
from pitchdesk.services.workflow import Workflow, get_workflow

logger = logging.getLogger(__name__)
router = APIRouter()


def get_caller(
    x_profile_id: str = Header(..., description="Authenticated profile id"),
    x_user_type: UserType = Header(..., description="agent or team"),
) -> Caller:
    return Caller(profile_id=x_profile_id, user_type=x_user_type)


class ContractMessageBody(BaseModel):
    content: str


class ShortlistBody(BaseModel):
    notes: Optional[str] = None


# --- Pitches ---

@router.post("/pitches", tags=["Pitches"], response_model=Pitch)
async def create_pitch(
    body: PitchCreate,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """Publish a player for transfer or loan. Team callers only."""
    return await wf.pitches.create_pitch(caller, body)


@router.get("/pitches", tags=["Pitches"], response_model=list[Pitch])
async def list_pitches(
    team_id: Optional[str] = None,
    player_id: Optional[str] = None,
    transfer_type: Optional[TransferType] = None,
    deal_stage: list[DealStage] = Query(default=[]),
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    include_inactive: bool = False,
    limit: int = Query(default=50, le=200),
    offset: int = 0,
    wf: Workflow = Depends(get_workflow),
):
    """List pitches, active and unexpired unless ``include_inactive`` is set."""
    filters = PitchFilters(
        team_id=team_id,
        player_id=player_id,
        transfer_type=transfer_type,
        deal_stages=deal_stage,
        min_price=min_price,
        max_price=max_price,
        include_inactive=include_inactive,
        limit=limit,
        offset=offset,
    )
    return await wf.pitches.get_active_pitches(filters)


@router.get("/pitches/{pitch_id}", tags=["Pitches"], response_model=Pitch)
async def get_pitch(pitch_id: str, wf: Workflow = Depends(get_workflow)):
    return await wf.pitches.require_pitch(pitch_id)


@router.post("/pitches/{pitch_id}/views", tags=["Pitches"])
async def record_view(pitch_id: str, wf: Workflow = Depends(get_workflow)):
    await wf.pitches.record_view(pitch_id)
    return {"recorded": pitch_id}


@router.post("/pitches/{pitch_id}/withdraw", tags=["Pitches"], response_model=Pitch)
async def withdraw_pitch(
    pitch_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.pitches.withdraw_pitch(caller, pitch_id)


# --- Interest ---

@router.post("/pitches/{pitch_id}/interest", tags=["Interest"], response_model=AgentInterest)
async def express_interest(
    pitch_id: str,
    body: InterestRequest,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """
    Express (or re-express) interest in a pitch.

    Repeated calls update the agent's single interest row; calling after a
    withdrawal reactivates it.
    """
    agent = await wf.profiles.ensure_agent_profile(caller)
    return await wf.ledger.express_interest(pitch_id, agent.id, body.status, body.message)


@router.delete("/pitches/{pitch_id}/interest", tags=["Interest"], response_model=AgentInterest)
async def cancel_interest(
    pitch_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    agent = await wf.profiles.ensure_agent_profile(caller)
    return await wf.ledger.cancel_interest(pitch_id, agent.id)


@router.get("/pitches/{pitch_id}/interest", tags=["Interest"], response_model=list[AgentInterest])
async def list_pitch_interest(
    pitch_id: str,
    include_inactive: bool = False,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """Interest on one pitch. Visible to the owning team only."""
    return await wf.ledger.list_interest_for_pitch(pitch_id, include_inactive, caller=caller)


@router.post(
    "/pitches/{pitch_id}/interest/{agent_id}/negotiate", tags=["Interest"], response_model=AgentInterest
)
async def start_negotiation(
    pitch_id: str,
    agent_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.ledger.start_negotiation(caller, pitch_id, agent_id)


@router.post("/pitches/{pitch_id}/interest/{agent_id}/reject", tags=["Interest"], response_model=AgentInterest)
async def reject_interest(
    pitch_id: str,
    agent_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.ledger.reject_interest(caller, pitch_id, agent_id)


@router.get("/interest", tags=["Interest"], response_model=list[AgentInterest])
async def list_my_interest(
    include_inactive: bool = False,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    agent = await wf.profiles.ensure_agent_profile(caller)
    return await wf.ledger.list_interest_for_agent(agent.id, include_inactive)


# --- Shortlist ---

@router.post("/pitches/{pitch_id}/shortlist", tags=["Shortlist"])
async def add_to_shortlist(
    pitch_id: str,
    body: Optional[ShortlistBody] = None,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    agent = await wf.profiles.ensure_agent_profile(caller)
    added = await wf.ledger.add_to_shortlist(pitch_id, agent.id, body.notes if body else None)
    return {"pitch_id": pitch_id, "added": added}


@router.delete("/pitches/{pitch_id}/shortlist", tags=["Shortlist"])
async def remove_from_shortlist(
    pitch_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    agent = await wf.profiles.ensure_agent_profile(caller)
    removed = await wf.ledger.remove_from_shortlist(pitch_id, agent.id)
    return {"pitch_id": pitch_id, "removed": removed}


@router.get("/shortlist", tags=["Shortlist"], response_model=list[ShortlistEntry])
async def list_shortlist(caller: Caller = Depends(get_caller), wf: Workflow = Depends(get_workflow)):
    agent = await wf.profiles.ensure_agent_profile(caller)
    return await wf.ledger.list_shortlist(agent.id)


# --- Contracts ---

@router.post("/contracts", tags=["Contracts"], response_model=Contract)
async def create_contract(
    body: ContractCreate,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """
    Open the pitch's contract with an interested agent.

    Fails with 409 duplicate_contract while another contract on the pitch is
    still active.
    """
    return await wf.contracts.create_contract(caller, body.pitch_id, body.agent_id, terms=body.terms)


@router.get("/contracts", tags=["Contracts"], response_model=list[Contract])
async def list_contracts(caller: Caller = Depends(get_caller), wf: Workflow = Depends(get_workflow)):
    return await wf.contracts.list_contracts(caller.profile_id, caller.user_type)


@router.get("/contracts/{contract_id}", tags=["Contracts"], response_model=Contract)
async def get_contract(
    contract_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.contracts.get_for_party(caller, contract_id)


@router.post("/contracts/{contract_id}/actions", tags=["Contracts"], response_model=Contract)
async def advance_contract(
    contract_id: str,
    body: ContractActionRequest,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """
    Move a contract through its lifecycle:
    draft → sent_to_agent → agent_reviewed → team_reviewed → signed → completed.
    """
    return await wf.contracts.advance(caller, contract_id, body.action, body.notes, body.terms)


@router.get("/contracts/{contract_id}/steps", tags=["Contracts"], response_model=list[ContractWorkflowStep])
async def list_contract_steps(
    contract_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.contracts.get_workflow_steps(caller, contract_id)


@router.post("/contracts/{contract_id}/messages", tags=["Contracts"], response_model=Message)
async def post_contract_message(
    contract_id: str,
    body: ContractMessageBody,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.contracts.post_contract_message(caller, contract_id, body.content)


@router.get("/contracts/{contract_id}/messages", tags=["Contracts"], response_model=list[Message])
async def list_contract_messages(
    contract_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.contracts.list_contract_messages(caller, contract_id)


# --- Messages ---

@router.post("/messages", tags=["Messages"], response_model=Message)
async def send_message(
    body: MessageCreate,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    if body.receiver_id == caller.profile_id:
        raise HTTPException(status_code=400, detail="Cannot message yourself")
    return await wf.dispatcher.dispatch(
        MessageType.GENERAL, caller.profile_id, body.receiver_id, body.pitch_id, body.content
    )


@router.get("/messages", tags=["Messages"], response_model=list[Message])
async def list_messages(
    pitch_id: Optional[str] = None,
    message_type: Optional[MessageType] = None,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """The caller's conversation, newest last."""
    return await wf.store.list_messages(
        pitch_id=pitch_id, participant_id=caller.profile_id, message_type=message_type
    )


# --- Notifications ---

@router.get("/notifications", tags=["Notifications"], response_model=list[Notification])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(default=50, le=200),
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    return await wf.dispatcher.list_notifications(caller.profile_id, unread_only=unread_only, limit=limit)


@router.post("/notifications/{notification_id}/read", tags=["Notifications"])
async def mark_notification_read(
    notification_id: str,
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    if not await wf.dispatcher.mark_notification_read(notification_id, caller.profile_id):
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return {"read": notification_id}


@router.post("/notifications/read-all", tags=["Notifications"])
async def mark_all_notifications_read(caller: Caller = Depends(get_caller), wf: Workflow = Depends(get_workflow)):
    count = await wf.dispatcher.mark_all_read(caller.profile_id)
    return {"marked_read": count}


# --- Maintenance ---

@router.post("/maintenance/expire", tags=["Maintenance"])
async def trigger_expiry_sweep(caller: Caller = Depends(get_caller), wf: Workflow = Depends(get_workflow)):
    """Run the pitch expiry sweep now instead of waiting for the scheduler."""
    logger.info(f"Expiry sweep triggered by {caller.profile_id}")
    return await run_expiry_sweep(lambda: wf)


@router.get("/maintenance/status", tags=["Maintenance"])
async def maintenance_status():
    scheduler = get_scheduler()
    job = scheduler.get_job("expiry_sweep") if scheduler else None
    return {
        "scheduler_running": bool(scheduler and scheduler.running),
        "next_sweep": job.next_run_time.isoformat() if job and job.next_run_time else None,
        "last_result": get_last_result(),
    }


# --- Export ---

@router.get("/export/contracts", tags=["Export"])
async def export_contracts(
    format: str = Query(default="csv", description="Export format: csv or xlsx"),
    caller: Caller = Depends(get_caller),
    wf: Workflow = Depends(get_workflow),
):
    """Export the caller's contracts to CSV or Excel."""
    if caller.user_type != UserType.TEAM:
        raise Forbidden("Contract export is available to teams only", profile_id=caller.profile_id)

    contracts = await wf.contracts.list_contracts(caller.profile_id, caller.user_type)
    rows = [
        {
            "id": c.id,
            "pitch_id": c.pitch_id,
            "agent_id": c.agent_id,
            "status": c.status.value,
            "contract_value": c.contract_value,
            "currency": c.currency,
            "service_charge_amount": c.financial_summary.get("service_charge_amount"),
            "created_at": c.created_at.isoformat(),
            "last_activity": c.last_activity.isoformat(),
        }
        for c in contracts
    ]

    if not rows:
        raise HTTPException(status_code=404, detail="No contracts to export.")

    if format == "xlsx":
        import openpyxl
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Contracts"
        headers = list(rows[0].keys())
        ws.append(headers)
        for row in rows:
            ws.append([row.get(h) for h in headers])
        buf = io.BytesIO()
        wb.save(buf)
        buf.seek(0)
        return StreamingResponse(
            buf,
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": "attachment; filename=contracts.xlsx"},
        )

    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(rows[0].keys()))
    writer.writeheader()
    writer.writerows(rows)
    buf.seek(0)
    return StreamingResponse(
        iter([buf.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=contracts.csv"},
    )
