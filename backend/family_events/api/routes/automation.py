"""Manual triggers for the pipeline stages the scheduler runs periodically."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from family_events.api.deps import get_services
from family_events.schemas.pipeline import ProposalSummary, RegistrationOutcome, RunSummary
from family_events.services.container import Services

router = APIRouter()


class ProcessApprovedResponse(BaseModel):
    summary: RunSummary
    outcomes: list[RegistrationOutcome]


@router.post("/propose", response_model=ProposalSummary)
async def propose_events(limit: int | None = None, services: Services = Depends(get_services)):
    return await services.orchestrator.propose_events(limit=limit)


@router.post("/process-approved", response_model=ProcessApprovedResponse)
async def process_approved(services: Services = Depends(get_services)):
    outcomes = await services.orchestrator.process_approved_events()
    return ProcessApprovedResponse(summary=RunSummary.from_outcomes(outcomes), outcomes=outcomes)


@router.post("/events/{event_id}/register", response_model=RegistrationOutcome)
async def register_event(event_id: int, services: Services = Depends(get_services)):
    return await services.orchestrator.process_auto_registration(event_id)
