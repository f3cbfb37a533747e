from fastapi import Request

from controller.src.services.scheduler import Scheduler

def get_scheduler(request: Request) -> Scheduler:
    """The scheduler owned by the running application."""
    return request.app.state.scheduler
