"""
Input Flow Webhook Service
Delivers the answers collected by a user input flow to its configured webhook.
"""
from typing import Optional, Dict, Any
from datetime import datetime
import httpx

from utils.log_utils import LogUtil
from models.flow_data import WebhookConfig


class InputFlowWebhookService:
    """
    Webhook collaborator for user_input_flow nodes.
    """

    def __init__(
        self,
        log_util: LogUtil,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        self.transport = transport

    async def send_answers(
        self,
        webhook: WebhookConfig,
        answers: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Post the collected answers to the webhook.

        Args:
            webhook: Webhook configuration from the node
            answers: variable name -> answer for every question of the input flow
            metadata: Instance/flow details, sent only if the webhook asks for it

        Returns:
            bool: True if the webhook answered with a 2xx status
        """
        if not webhook.enabled or not webhook.url:
            return False

        payload: Dict[str, Any] = {
            "answers": answers,
            "submitted_at": datetime.utcnow().isoformat()
        }
        if webhook.includeMetadata and metadata:
            payload["metadata"] = metadata

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                response = await client.request(
                    method=webhook.method,
                    url=webhook.url,
                    json=payload,
                    headers=webhook.headers
                )

            if response.is_success:
                self.log_util.info(
                    service_name="InputFlowWebhookService",
                    message=f"Delivered {len(answers)} answer(s) to {webhook.url}"
                )
                return True

            self.log_util.error(
                service_name="InputFlowWebhookService",
                message=f"Webhook {webhook.url} returned {response.status_code}"
            )
            return False

        except httpx.TimeoutException:
            self.log_util.error(
                service_name="InputFlowWebhookService",
                message=f"Timeout calling webhook {webhook.url}"
            )
            return False
        except (httpx.RequestError, httpx.InvalidURL) as e:
            self.log_util.error(
                service_name="InputFlowWebhookService",
                message=f"Request error calling webhook {webhook.url}: {str(e)}"
            )
            return False
