from fastapi import APIRouter
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_runtime_service import FlowRuntimeService

# Models
from models.request.webhook_message_request import WebhookMessageRequest
from models.response.webhook_message_response import WebhookMessageResponse


def create_webhook_message_api(
    log_util: LogUtil,
    runtime_service: FlowRuntimeService
) -> APIRouter:
    """
    Create API router for inbound messages from channel services.
    Replies resume waiting instances, other messages are matched against flow triggers.
    """
    router = APIRouter(
        prefix="/webhook",
        tags=["webhook"],
    )

    @router.post("/message", response_model=WebhookMessageResponse)
    async def process_webhook_message(request: WebhookMessageRequest) -> WebhookMessageResponse:
        try:
            return await runtime_service.process_inbound_message(request)
        except Exception as e:
            log_util.error(
                service_name="WebhookMessageAPI",
                message=f"Error processing webhook message for user {request.sender}: {str(e)}"
            )

            # Channel services retry on non-2xx, so errors are reported in the body
            return WebhookMessageResponse(
                status="error",
                message="Error processing webhook message",
                automation_triggered=False,
                instance_id=request.instance_id or request.sender,
                error_details=str(e)
            )

    @router.get("/health")
    async def webhook_health_check() -> Dict[str, Any]:
        """Health check endpoint for webhook API"""
        return {
            "status": "healthy",
            "api": "webhook_message_api",
            "service": "convo_flow_engine"
        }

    return router
