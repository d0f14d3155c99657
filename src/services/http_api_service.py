"""
HTTP API Service
Performs the outbound request configured on an http_api node.
"""
import base64
import json
from typing import Optional, Dict, Any
import httpx

from utils.log_utils import LogUtil
from models.flow_data import HttpApiNodeData
from models.http_api_result import HttpApiResult
from models.variable_store import VariableStore


class HttpApiService:
    """
    Service for executing http_api node requests.
    Never raises for request failures; every outcome is returned as an HttpApiResult.
    """

    def __init__(
        self,
        log_util: LogUtil,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        # Injected in tests to avoid real network calls
        self.transport = transport

    def build_headers(self, node_data: HttpApiNodeData, variables: VariableStore) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for header in node_data.headers:
            if header.key:
                headers[header.key] = variables.interpolate(header.value)

        auth = node_data.auth
        if auth is not None:
            if auth.type == "basic" and auth.username and auth.password:
                credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
                headers["Authorization"] = f"Basic {credentials}"
            elif auth.type == "bearer" and auth.token:
                headers["Authorization"] = f"Bearer {auth.token}"
            elif auth.type == "api_key" and auth.apiKey and auth.apiKeyHeader:
                headers[auth.apiKeyHeader] = auth.apiKey

        return headers

    def build_body(self, node_data: HttpApiNodeData, variables: VariableStore, headers: Dict[str, str]) -> Optional[str]:
        """
        Request body for non-GET requests, with the matching Content-Type set on headers.
        """
        if node_data.method == "GET" or node_data.bodyType == "none" or not node_data.body:
            return None

        if node_data.bodyType == "json":
            headers["Content-Type"] = "application/json"
        elif node_data.bodyType == "form":
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        return variables.interpolate(node_data.body)

    @staticmethod
    def _parse_response(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except (json.JSONDecodeError, ValueError):
                return response.text
        return response.text

    async def execute(self, node_data: HttpApiNodeData, variables: VariableStore) -> HttpApiResult:
        """
        Execute the request described by the node.

        Args:
            node_data: http_api node payload
            variables: instance variables used to fill {{name}} placeholders

        Returns:
            HttpApiResult with success set for 2xx responses
        """
        url = variables.interpolate(node_data.url)
        headers = self.build_headers(node_data, variables)
        body = self.build_body(node_data, variables, headers)

        self.log_util.info(
            service_name="HttpApiService",
            message=f"[HTTP_API] {node_data.method} {url} (timeout {node_data.timeout}s)"
        )

        try:
            async with httpx.AsyncClient(timeout=node_data.timeout, transport=self.transport) as client:
                response = await client.request(
                    method=node_data.method,
                    url=url,
                    headers=headers,
                    content=body
                )

            data = self._parse_response(response)

            if response.is_success:
                return HttpApiResult(success=True, status_code=response.status_code, data=data)

            self.log_util.warning(
                service_name="HttpApiService",
                message=f"[HTTP_API] {node_data.method} {url} failed with status {response.status_code}"
            )
            return HttpApiResult(
                success=False,
                status_code=response.status_code,
                data=data,
                error=f"Request failed with status {response.status_code}"
            )

        except httpx.TimeoutException:
            self.log_util.error(
                service_name="HttpApiService",
                message=f"[HTTP_API] Timeout calling {url}"
            )
            return HttpApiResult(success=False, error="Request timed out", timed_out=True)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            self.log_util.error(
                service_name="HttpApiService",
                message=f"[HTTP_API] Request error calling {url}: {str(e)}"
            )
            return HttpApiResult(success=False, error=f"Request error: {str(e)}")
