from fastapi import APIRouter, Request

router = APIRouter()


@router.get("")
async def health_check(request: Request):
    ledger = request.app.state.controller.ledger
    return {"status": "ok", "ledger": "enabled" if ledger.enabled else "disabled"}
