from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from bson.errors import InvalidId
import re
import urllib.parse
import threading
import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime
import weakref
from pymongo import ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import FlowDBException

# Models
from models.flow_data import FlowData
from models.execution_state import ExecutionState
from models.scheduled_step_data import ScheduledStepData

"""
Database class for flow operations
"""
class FlowDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # One client per event loop, created lazily
        self._clients = {}  # {loop_id: client_data}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _connection_uri(self) -> str:
        if self.username and self.password:
            return f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}"
        return f"mongodb://{self.host}:{self.port}/"

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Motor clients are bound to the loop they were created on.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Another thread may have created it while we waited
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self._connection_uri(),
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': self._initialize_collections_for_client(db),
                'loop': weakref.ref(loop)
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _initialize_collections_for_client(self, db):
        """
        Initialize MongoDB collections for a given database instance
        Returns a dictionary of collections
        """
        return {
            'flows': db.flows,
            'execution_states': db.execution_states,
            'execution_archive': db.execution_archive,
            'scheduled_steps': db.scheduled_steps
        }

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )

            self._clients.clear()

            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        else:
            self.log_util.error(
                service_name="FlowDB",
                message=f"Error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database error: {str(error)}",
                status_code=500
            )

    @staticmethod
    def _to_object_id(value: str) -> Optional[ObjectId]:
        try:
            return ObjectId(value)
        except (InvalidId, TypeError):
            return None

    # Flow CRUD operations
    async def create_flow(self, flow: FlowData) -> FlowData:
        """
        Create a new flow
        """
        client_data = self._get_client_for_current_loop()
        try:
            flow_dict = flow.model_dump(exclude={"id"})
            result = await client_data['collections']['flows'].insert_one(flow_dict)
            flow_dict["id"] = str(result.inserted_id)
            return FlowData.model_validate(flow_dict)
        except Exception as e:
            self._handle_db_operation("create_flow", e)

    async def get_flow_by_id(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID
        """
        object_id = self._to_object_id(flow_id)
        if object_id is None:
            return None

        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one({"_id": object_id})
            if result is None:
                return None
            result["id"] = str(result.pop("_id"))
            return FlowData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("get_flow_by_id", e)

    async def get_flows(self, status: Optional[str] = None) -> List[FlowData]:
        """
        Get all flows, optionally filtered by status
        """
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {}
            if status is not None:
                query["status"] = status

            cursor = client_data['collections']['flows'].find(query).sort("created_at", 1)
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flow_dict["id"] = str(flow_dict.pop("_id"))
                flows.append(FlowData.model_validate(flow_dict))
            return flows
        except Exception as e:
            self._handle_db_operation("get_flows", e)

    async def get_published_flows(self) -> List[FlowData]:
        return await self.get_flows(status="published")

    async def update_flow(self, flow_id: str, flow: FlowData) -> Optional[FlowData]:
        """
        Replace the stored graph of a flow. The whole graph is swapped in one write.
        """
        object_id = self._to_object_id(flow_id)
        if object_id is None:
            return None

        client_data = self._get_client_for_current_loop()
        try:
            flow_dict = flow.model_dump(exclude={"id", "created_at"})
            flow_dict["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['flows'].find_one_and_update(
                {"_id": object_id},
                {"$set": flow_dict},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            result["id"] = str(result.pop("_id"))
            return FlowData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("update_flow", e)

    async def delete_flow(self, flow_id: str) -> bool:
        object_id = self._to_object_id(flow_id)
        if object_id is None:
            return False

        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].delete_one({"_id": object_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_flow", e)

    # Execution state operations
    async def save_execution_state(self, state: ExecutionState) -> ExecutionState:
        """
        Upsert the live state of an instance, keyed by instance_id
        """
        client_data = self._get_client_for_current_loop()
        try:
            state_dict = state.model_dump(exclude={"id"})
            state_dict["updated_at"] = datetime.utcnow()
            await client_data['collections']['execution_states'].update_one(
                {"instance_id": state.instance_id},
                {"$set": state_dict},
                upsert=True
            )
            return state
        except Exception as e:
            self._handle_db_operation("save_execution_state", e)

    async def get_execution_state(self, instance_id: str) -> Optional[ExecutionState]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['execution_states'].find_one({"instance_id": instance_id})
            if result is None:
                return None
            result["id"] = str(result.pop("_id"))
            return ExecutionState.model_validate(result)
        except Exception as e:
            self._handle_db_operation("get_execution_state", e)

    async def archive_execution_state(self, state: ExecutionState) -> bool:
        """
        Move a terminal instance out of the live collection
        """
        client_data = self._get_client_for_current_loop()
        try:
            state_dict = state.model_dump(exclude={"id"})
            state_dict["archived_at"] = datetime.utcnow()
            await client_data['collections']['execution_archive'].insert_one(state_dict)
            result = await client_data['collections']['execution_states'].delete_one({"instance_id": state.instance_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("archive_execution_state", e)

    # Scheduled step operations
    async def save_scheduled_step(self, step: ScheduledStepData) -> ScheduledStepData:
        """
        Insert a scheduled step once per dedupe key. Re-scheduling the same
        (instance, step) pair leaves the existing record untouched.
        """
        client_data = self._get_client_for_current_loop()
        try:
            step_dict = step.model_dump(exclude={"id"})
            result = await client_data['collections']['scheduled_steps'].find_one_and_update(
                {"dedupe_key": step.dedupe_key},
                {"$setOnInsert": step_dict},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            result["id"] = str(result.pop("_id"))
            return ScheduledStepData.model_validate(result)
        except Exception as e:
            self._handle_db_operation("save_scheduled_step", e)

    async def get_due_scheduled_steps(self, limit: int = 100) -> List[ScheduledStepData]:
        """
        Steps not yet delivered whose fire time has passed, oldest first
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['scheduled_steps'].find({
                "processed": False,
                "fire_at": {"$lte": datetime.utcnow()}
            }).sort("fire_at", 1).limit(limit)
            results = []
            async for doc in cursor:
                doc["id"] = str(doc.pop("_id"))
                results.append(ScheduledStepData.model_validate(doc))
            return results
        except Exception as e:
            self._handle_db_operation("get_due_scheduled_steps", e)

    async def mark_scheduled_step_processed(self, dedupe_key: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['scheduled_steps'].update_one(
                {"dedupe_key": dedupe_key},
                {
                    "$set": {"processed": True, "updated_at": datetime.utcnow()},
                    "$inc": {"attempts": 1}
                }
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("mark_scheduled_step_processed", e)

    async def record_scheduled_step_failure(self, dedupe_key: str, error: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['scheduled_steps'].update_one(
                {"dedupe_key": dedupe_key},
                {
                    "$set": {"last_error": error, "updated_at": datetime.utcnow()},
                    "$inc": {"attempts": 1}
                }
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("record_scheduled_step_failure", e)

    async def cancel_scheduled_steps(self, instance_id: str, execution_id: str) -> int:
        """
        Close every undelivered step scheduled by one run of an instance
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['scheduled_steps'].update_many(
                {
                    "instance_id": instance_id,
                    "processed": False,
                    "step_id": {"$regex": f"^{re.escape(execution_id)}:"}
                },
                {"$set": {"processed": True, "cancelled": True, "updated_at": datetime.utcnow()}}
            )
            return result.modified_count
        except Exception as e:
            self._handle_db_operation("cancel_scheduled_steps", e)
