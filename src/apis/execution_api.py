from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_runtime_service import FlowRuntimeService

# Models
from models.execution_state import ExecutionState
from models.request.execution_request import StartExecutionRequest, ResumeExecutionRequest
from models.response.execution_response import ExecutionResponse

# Exceptions
from exceptions.flow_exception import FlowException


def create_execution_api(
    log_util: LogUtil,
    runtime_service: FlowRuntimeService
) -> APIRouter:
    """
    Create API router for driving flow instances directly (builder preview, tests, integrations).
    """
    router = APIRouter(
        prefix="/execution",
        tags=["execution"],
    )

    @router.post("/start", response_model=ExecutionResponse)
    async def start_execution(request: StartExecutionRequest) -> ExecutionResponse:
        try:
            return await runtime_service.start_instance(
                flow_id=request.flow_id,
                instance_id=request.instance_id,
                keyword=request.keyword,
                recipient=request.recipient,
                event_id=request.event_id
            )
        except FlowException as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error starting instance {request.instance_id}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error starting instance {request.instance_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/resume/{instance_id}", response_model=ExecutionResponse)
    async def resume_execution(instance_id: str, request: ResumeExecutionRequest) -> ExecutionResponse:
        try:
            return await runtime_service.resume_instance(
                instance_id=instance_id,
                user_input=request.user_input,
                option_id=request.option_id,
                event_id=request.event_id
            )
        except FlowException as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error resuming instance {instance_id}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error resuming instance {instance_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/reset/{instance_id}", response_model=ExecutionResponse)
    async def reset_execution(instance_id: str) -> ExecutionResponse:
        try:
            return await runtime_service.reset_instance(instance_id=instance_id)
        except FlowException as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error resetting instance {instance_id}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error resetting instance {instance_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/cancel/{instance_id}", response_model=ExecutionResponse)
    async def cancel_execution(instance_id: str) -> ExecutionResponse:
        try:
            return await runtime_service.cancel_instance(instance_id=instance_id)
        except FlowException as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error cancelling instance {instance_id}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error cancelling instance {instance_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/state/{instance_id}", response_model=ExecutionState)
    async def get_execution_state(instance_id: str) -> ExecutionState:
        try:
            return await runtime_service.get_instance_state(instance_id=instance_id)
        except FlowException as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="ExecutionAPI", message=f"Error reading state of instance {instance_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
