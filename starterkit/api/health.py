from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health/jobs")
def jobs_health(request: Request):
    jobs = getattr(request.app.state, "jobs", None)
    email = getattr(request.app.state, "email", None)
    available = bool(jobs is not None and jobs.is_available())
    body = {
        "jobs_available": available,
        "email_available": bool(email is not None and email.is_available()),
        "queues": {},
    }
    if available:
        body["queues"] = jobs.get_engine().queue_stats()
    return body
