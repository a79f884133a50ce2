"""SAF-T export and chain verification endpoints."""
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, Response

from fiscal_engine.api.deps import ChainAudit, Exporter
from fiscal_engine.schemas.fiscal_document import ChainIssueResponse, ChainVerificationResponse

router = APIRouter()


@router.get("/export")
async def export_saft(
    exporter: Exporter,
    organization_id: UUID = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    include_proforma: bool = False,
):
    """SAF-T AO audit file for a period."""
    content = await exporter.export(
        organization_id,
        start_date,
        end_date,
        include_proforma=include_proforma,
    )
    file_name = f"SAFT_AO_{start_date.isoformat()}_{end_date.isoformat()}.xml"
    return Response(
        content=content,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/chain/{organization_id}", response_model=List[ChainVerificationResponse])
async def verify_chain(
    organization_id: UUID,
    audit: ChainAudit,
    series: Optional[str] = None,
):
    """Verify sequence contiguity and signatures of one series or all of them."""
    if series:
        reports = [await audit.verify_series(organization_id, series)]
    else:
        reports = await audit.verify_organization(organization_id)

    return [
        ChainVerificationResponse(
            organization_id=report.organization_id,
            series=report.series,
            documents_checked=report.documents_checked,
            is_valid=report.is_valid,
            issues=[ChainIssueResponse(**issue.__dict__) for issue in report.issues],
        )
        for report in reports
    ]
