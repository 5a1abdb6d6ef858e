from subsync.extensions import db
from subsync.utils.helpers import utcnow

RESOURCES = ("use_cases", "tutorials", "blogs", "api_calls")

# Cap value meaning "no limit"
UNLIMITED = -1


class UsageLimits(db.Model):
    __tablename__ = "usage_limits"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255), nullable=False, unique=True, index=True)

    # Monthly caps
    monthly_use_cases = db.Column(db.Integer, nullable=False, default=0)
    monthly_tutorials = db.Column(db.Integer, nullable=False, default=0)
    monthly_blogs = db.Column(db.Integer, nullable=False, default=0)
    monthly_api_calls = db.Column(db.Integer, nullable=False, default=0)

    # Used in the current period
    used_use_cases = db.Column(db.Integer, nullable=False, default=0)
    used_tutorials = db.Column(db.Integer, nullable=False, default=0)
    used_blogs = db.Column(db.Integer, nullable=False, default=0)
    used_api_calls = db.Column(db.Integer, nullable=False, default=0)

    current_period_start = db.Column(db.DateTime, nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=False, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def cap(self, resource: str) -> int:
        return getattr(self, f"monthly_{resource}")

    def used(self, resource: str) -> int:
        return getattr(self, f"used_{resource}")

    def to_dict(self) -> dict:
        data = {"user_id": self.user_id}
        for resource in RESOURCES:
            data[resource] = {"cap": self.cap(resource), "used": self.used(resource)}
        data["current_period_start"] = self.current_period_start.isoformat()
        data["current_period_end"] = self.current_period_end.isoformat()
        return data

    def __repr__(self) -> str:
        return f"<UsageLimits user_id={self.user_id!r} period_end={self.current_period_end}>"
