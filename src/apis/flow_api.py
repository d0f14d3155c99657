from typing import Optional
from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException


def _validation_http_exception(e: FlowValidationException) -> HTTPException:
    return HTTPException(
        status_code=e.status_code,
        detail={
            "message": e.message,
            "issues": [issue.model_dump() for issue in e.issues]
        }
    )


def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    @router.post("/create")
    async def create_flow(flow_data: dict):
        try:
            return await flow_service.create_flow(flow_data=flow_data)
        except FlowValidationException as e:
            log_util.warning(service_name="FlowAPI", message=f"Rejected malformed flow: {e.message}")
            raise _validation_http_exception(e)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error creating flow: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error creating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/list")
    async def get_flows_list(status: Optional[str] = None):
        try:
            return await flow_service.get_flows_list(status=status)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(flow_id: str):
        try:
            return await flow_service.get_flow_detail(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.put("/update/{flow_id}")
    async def update_flow(flow_id: str, flow_data: dict):
        try:
            return await flow_service.update_flow(flow_id=flow_id, flow_data=flow_data)
        except FlowValidationException as e:
            log_util.warning(service_name="FlowAPI", message=f"Rejected malformed flow {flow_id}: {e.message}")
            raise _validation_http_exception(e)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/delete/{flow_id}")
    async def delete_flow(flow_id: str):
        try:
            await flow_service.delete_flow(flow_id=flow_id)
            return {"status": "success", "message": f"Flow {flow_id} deleted"}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error deleting flow: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error deleting flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/validate")
    async def validate_flow_data(flow_data: dict):
        """
        Validate an unsaved graph and return its errors and warnings.
        """
        try:
            return flow_service.validate_flow_data(flow_data=flow_data)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error validating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/validate/{flow_id}")
    async def validate_flow(flow_id: str):
        try:
            return await flow_service.validate_flow(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error validating flow: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error validating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/publish/{flow_id}")
    async def publish_flow(flow_id: str):
        try:
            return await flow_service.publish_flow(flow_id=flow_id)
        except FlowValidationException as e:
            log_util.warning(service_name="FlowAPI", message=f"Flow {flow_id} not published: {e.message}")
            raise _validation_http_exception(e)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error publishing flow: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error publishing flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/status/{flow_id}")
    async def update_flow_status(flow_id: str, status_data: dict):
        """
        Update flow status. Valid statuses: "draft", "published", "stop"

        Request body:
        {
            "status": "published" | "stop"
        }
        """
        try:
            status = status_data.get("status")
            if not status:
                raise HTTPException(status_code=400, detail="Status is required in request body")

            return await flow_service.update_flow_status(flow_id=flow_id, status=status)
        except FlowValidationException as e:
            raise _validation_http_exception(e)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow status: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except HTTPException:
            raise
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow status: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
