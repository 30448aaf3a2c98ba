from beanie import Document, Indexed, PydanticObjectId


class PointsBalance(Document):
    """Denormalized balance per user; must equal the sum of the user's ledger deltas."""
    user_id: Indexed(PydanticObjectId, unique=True)
    balance: int = 0

    class Settings:
        name = "points_balances"
