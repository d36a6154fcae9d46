"""Request-scoped access to the service container and caller identity."""

from fastapi import Header, HTTPException, Request

from kitchen_jobs.policy import PolicyContext
from kitchen_jobs.services import KitchenJobs


def get_jobs(request: Request) -> KitchenJobs:
    jobs = getattr(request.app.state, "jobs", None)
    if jobs is None or not jobs.is_open:
        raise HTTPException(status_code=503, detail="Job service not available")
    return jobs


def get_policy_context(
    x_user_id: str = Header(...),
    x_household_key: str = Header(...),
) -> PolicyContext:
    """Caller identity, as forwarded by the authenticating gateway."""
    return PolicyContext(user_id=x_user_id, household_key=x_household_key)
