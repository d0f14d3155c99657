from typing import Optional, Dict, Any
import httpx

# Utils
from utils.log_utils import LogUtil

# Models
from models.flow_message_data import FlowMessage


class ChannelMessageService:
    """
    Outbound messaging collaborator. Hands bot messages and scheduled sequence steps
    to the channel service, which owns provider formatting and retries.
    """

    def __init__(
        self,
        log_util: LogUtil,
        channel_service_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        # Default to localhost, but can be overridden for different deployments
        self.channel_service_url = channel_service_url or "http://localhost:8017/channel/message/send"
        self.transport = transport

    def _build_content(self, message: FlowMessage) -> Dict[str, Any]:
        """
        Map a transcript message to the channel-agnostic content shape.
        """
        if message.media_id or message.media_type:
            return {
                "content_type": "media",
                "media_type": message.media_type,
                "media_id": message.media_id,
                "caption": message.content
            }
        if message.url:
            return {
                "content_type": "cta_url",
                "body": message.content,
                "button_text": message.button_text,
                "url": message.url,
                "header": message.header,
                "footer": message.footer
            }
        if message.options:
            return {
                "content_type": "interactive",
                "body": message.content,
                "header": message.header,
                "footer": message.footer,
                "options": [option.model_dump() for option in message.options]
            }
        return {
            "content_type": "text",
            "text": message.content
        }

    async def _post(self, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> bool:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                response = await client.post(self.channel_service_url, json=payload, headers=headers)

            if response.is_success:
                return True

            self.log_util.error(
                service_name="ChannelMessageService",
                message=f"Channel service rejected message for {payload.get('recipient')}: {response.status_code} - {response.text}"
            )
            return False

        except httpx.TimeoutException:
            self.log_util.error(
                service_name="ChannelMessageService",
                message=f"Timeout sending message to {payload.get('recipient')}"
            )
            return False
        except httpx.RequestError as e:
            self.log_util.error(
                service_name="ChannelMessageService",
                message=f"Request error sending message to {payload.get('recipient')}: {str(e)}"
            )
            return False

    async def send_message(self, recipient: Optional[str], message: FlowMessage) -> bool:
        """
        Send one bot message to the contact.

        Returns:
            bool: True if the channel service accepted the message
        """
        if not recipient:
            self.log_util.warning(
                service_name="ChannelMessageService",
                message=f"No recipient for message {message.id}, skipping send"
            )
            return False

        payload = {
            "recipient": recipient,
            "message_id": message.id,
            "node_id": message.node_id,
            "content": self._build_content(message)
        }
        return await self._post(payload, idempotency_key=message.id)

    async def send_scheduled_step(self, recipient: Optional[str], payload: Dict[str, Any], dedupe_key: str) -> bool:
        """
        Send a sequence step. The dedupe key is passed as idempotency key so
        redelivery after a crash does not reach the contact twice.
        """
        if not recipient:
            self.log_util.warning(
                service_name="ChannelMessageService",
                message=f"No recipient for scheduled step {dedupe_key}, skipping send"
            )
            return False

        if payload.get("messageType") == "template":
            content = {
                "content_type": "template",
                "template_name": payload.get("templateName"),
                "template_id": payload.get("templateId"),
                "template_language": payload.get("templateLanguage"),
                "template_components": payload.get("templateComponents") or []
            }
        else:
            content = {
                "content_type": "text",
                "text": payload.get("textMessage") or ""
            }

        return await self._post(
            {
                "recipient": recipient,
                "message_id": dedupe_key,
                "content": content
            },
            idempotency_key=dedupe_key
        )
