from app.models.user import User
from app.models.points_balance import PointsBalance
from app.models.transaction import Transaction
from app.models.preferences import UserPreferences

__all__ = [
    "User",
    "PointsBalance",
    "Transaction",
    "UserPreferences",
]
