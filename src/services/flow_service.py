from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Services
from services.flow_validation_service import FlowValidationService

# Models
from models.flow_data import FlowData
from models.validation_data import ValidationIssue, ValidationResult

# Exceptions
from exceptions.flow_exception import (
    FlowException,
    FlowServiceException,
    FlowNotFoundException,
    FlowValidationException,
)

VALID_STATUSES = ["draft", "published", "stop"]


class FlowService:
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, validation_service: FlowValidationService):
        self.log_util = log_util
        self.flow_db = flow_db
        self.validation_service = validation_service

    def parse_flow(self, flow_data: Dict[str, Any]) -> FlowData:
        """
        Build a FlowData from a request body. Structural problems (unknown node
        type, missing fields) are reported as a FlowValidationException.
        """
        try:
            return FlowData.model_validate(flow_data)
        except ValidationError as e:
            issues = []
            for error in e.errors():
                issues.append(ValidationIssue(
                    field=".".join(str(part) for part in error.get("loc", ())),
                    message=error.get("msg", "Invalid value")
                ))
            raise FlowValidationException(message="Flow graph is malformed", issues=issues)

    async def _get_existing_flow(self, flow_id: str) -> FlowData:
        flow = await self.flow_db.get_flow_by_id(flow_id)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        return flow

    async def create_flow(self, flow_data: Dict[str, Any]) -> FlowData:
        """
        Create a new flow. New flows always start as drafts.
        """
        flow = self.parse_flow(flow_data)
        flow.id = None
        flow.status = "draft"
        flow.version = 1
        flow.created_at = datetime.utcnow()
        flow.updated_at = flow.created_at

        try:
            saved_flow = await self.flow_db.create_flow(flow)
        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error creating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error creating flow: {str(e)}")

        self.log_util.info(
            service_name="FlowService",
            message=f"Flow '{saved_flow.name}' created successfully with ID: {saved_flow.id}"
        )
        return saved_flow

    async def get_flows_list(self, status: Optional[str] = None) -> List[FlowData]:
        if status is not None and status not in VALID_STATUSES:
            raise FlowServiceException(
                message=f"Invalid status: {status}. Valid statuses are: {', '.join(VALID_STATUSES)}"
            )
        flows = await self.flow_db.get_flows(status=status)
        return flows or []

    async def get_flow_detail(self, flow_id: str) -> FlowData:
        return await self._get_existing_flow(flow_id)

    async def update_flow(self, flow_id: str, flow_data: Dict[str, Any]) -> FlowData:
        """
        Replace the graph of a flow. Editing sends the flow back to draft and
        bumps its version; running instances keep the graph they started with.
        """
        existing_flow = await self._get_existing_flow(flow_id)
        flow = self.parse_flow(flow_data)
        flow.id = flow_id
        flow.status = "draft"
        flow.version = existing_flow.version + 1
        flow.created_at = existing_flow.created_at

        updated_flow = await self.flow_db.update_flow(flow_id, flow)
        if updated_flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")

        self.log_util.info(
            service_name="FlowService",
            message=f"Flow '{updated_flow.name}' updated to version {updated_flow.version} (ID: {flow_id})"
        )
        return updated_flow

    async def delete_flow(self, flow_id: str) -> bool:
        deleted = await self.flow_db.delete_flow(flow_id)
        if not deleted:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")

        self.log_util.info(
            service_name="FlowService",
            message=f"Flow {flow_id} deleted"
        )
        return True

    def validate_flow_data(self, flow_data: Dict[str, Any]) -> ValidationResult:
        """
        Validate an unsaved graph, e.g. while it is being edited in the builder.
        """
        try:
            flow = self.parse_flow(flow_data)
        except FlowValidationException as e:
            return ValidationResult(is_valid=False, errors=e.issues)
        return self.validation_service.validate_flow(flow)

    async def validate_flow(self, flow_id: str) -> ValidationResult:
        flow = await self._get_existing_flow(flow_id)
        return self.validation_service.validate_flow(flow)

    async def update_flow_status(self, flow_id: str, status: str) -> FlowData:
        """
        Update flow status. Valid statuses: "draft", "published", "stop".
        Publishing is refused while the flow has validation errors.
        """
        if status not in VALID_STATUSES:
            raise FlowServiceException(
                message=f"Invalid status: {status}. Valid statuses are: {', '.join(VALID_STATUSES)}"
            )

        flow = await self._get_existing_flow(flow_id)
        current_status = flow.status or "draft"

        if status == "published":
            result = self.validation_service.validate_flow(flow)
            if not result.is_valid:
                self.log_util.warning(
                    service_name="FlowService",
                    message=f"Flow {flow_id} not published: {len(result.errors)} validation error(s)"
                )
                raise FlowValidationException(
                    message=f"Flow has {len(result.errors)} validation error(s) and cannot be published",
                    issues=result.errors
                )

        flow.status = status
        updated_flow = await self.flow_db.update_flow(flow_id, flow)
        if updated_flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")

        status_action = {
            "published": "published",
            "stop": "stopped",
            "draft": "moved to draft"
        }.get(status, status)
        self.log_util.info(
            service_name="FlowService",
            message=f"Flow '{updated_flow.name}' {status_action} successfully with ID: {flow_id} (status: {current_status} -> {status})"
        )
        return updated_flow

    async def publish_flow(self, flow_id: str) -> FlowData:
        return await self.update_flow_status(flow_id, "published")

    async def stop_flow(self, flow_id: str) -> FlowData:
        return await self.update_flow_status(flow_id, "stop")
