from fastapi import APIRouter

from app.services import bet_rules

router = APIRouter(prefix="/api/betting", tags=["betting"])


@router.get("/rules")
async def get_rules():
    """Active bet-mode rules: leg counts, teaser point options and payout profiles."""
    rules = await bet_rules.load_rules(active_only=True)
    return [rule.to_public() for rule in rules.values()]
