import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Services
from services.flow_service import FlowService
from services.flow_validation_service import FlowValidationService
from services.flow_runtime_service import FlowRuntimeService
from services.channel_message_service import ChannelMessageService
from services.http_api_service import HttpApiService
from services.input_flow_webhook_service import InputFlowWebhookService
from services.assistant_handoff_service import AssistantHandoffService
from services.sequence_scheduler_service import SequenceSchedulerService

# APIs
from apis.flow_api import create_flow_api
from apis.execution_api import create_execution_api
from apis.webhook_message_api import create_webhook_message_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

# Services
flow_validation_service = FlowValidationService(log_util=log_util)

flow_service = FlowService(
    log_util=log_util,
    flow_db=flow_db,
    validation_service=flow_validation_service
)

channel_message_service = ChannelMessageService(
    log_util=log_util,
    channel_service_url=environment_utils.get_env_variable("CHANNEL_SERVICE_URL")
)

assistant_handoff_service = AssistantHandoffService(
    log_util=log_util,
    assistant_service_url=environment_utils.get_env_variable("ASSISTANT_SERVICE_URL")
)

# Sequence scheduler, delivery handler is wired to the runtime below
sequence_scheduler_service = SequenceSchedulerService(
    log_util=log_util,
    flow_db=flow_db,
    check_interval_seconds=environment_utils.get_env_variable("SCHEDULER_CHECK_INTERVAL_SECONDS")
)

flow_runtime_service = FlowRuntimeService(
    log_util=log_util,
    flow_db=flow_db,
    channel_message_service=channel_message_service,
    http_api_service=HttpApiService(log_util=log_util),
    scheduler_service=sequence_scheduler_service,
    webhook_service=InputFlowWebhookService(log_util=log_util),
    assistant_handoff_service=assistant_handoff_service,
    max_steps=environment_utils.get_env_variable("MAX_STEPS_PER_INSTANCE")
)

sequence_scheduler_service.set_delivery_handler(flow_runtime_service.deliver_scheduled_step)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_util.info(service_name="FlowEngineService", message="Application startup complete")

    await sequence_scheduler_service.start()

    yield

    # Shutdown
    await sequence_scheduler_service.stop()

    flow_db.close()
    log_util.info(service_name="FlowEngineService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="convo flow engine",
    description="Conversation flow builder backend: flow validation and resumable flow execution",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Flow management APIs
flow_api_router = create_flow_api(
    log_util=log_util,
    flow_service=flow_service
)
app.include_router(flow_api_router)

# Execution APIs (start, resume, reset, cancel, state)
execution_api_router = create_execution_api(
    log_util=log_util,
    runtime_service=flow_runtime_service
)
app.include_router(execution_api_router)

# Webhook message API (receives messages from channel services)
webhook_message_router = create_webhook_message_api(
    log_util=log_util,
    runtime_service=flow_runtime_service
)
app.include_router(webhook_message_router)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "convo_flow_engine"}

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="FlowEngineService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "status_code": exc.status_code
        }
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="FlowEngineService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        }
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
