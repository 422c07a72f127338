"""Request-scoped accessors for the engine components stored on ``app.state``."""

from fastapi import Depends, HTTPException, Request

from agentloop.autonomous.controller import AutonomousController
from agentloop.services.engine_service import EngineService
from agentloop.services.job_service import JobService


def get_engine(request: Request) -> EngineService:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine


def get_job_service(engine: EngineService = Depends(get_engine)) -> JobService:
    return engine.jobs


def get_autonomous_controller(engine: EngineService = Depends(get_engine)) -> AutonomousController:
    return engine.autonomous
