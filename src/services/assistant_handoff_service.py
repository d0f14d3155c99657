import asyncio
from typing import Optional, Dict, Any
import aiohttp

# Utils
from utils.log_utils import LogUtil


class AssistantHandoffService:
    """Service for handing a conversation over to an AI assistant."""
    def __init__(self, log_util: LogUtil, assistant_service_url: Optional[str] = None):
        self.assistant_service_url = assistant_service_url or "http://localhost:8019/assistant/handoff"
        self.log_util = log_util

    async def handoff(
        self,
        assistant_id: str,
        instance_id: str,
        recipient: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> bool:
        payload = {
            "assistant_id": assistant_id,
            "instance_id": instance_id,
            "recipient": recipient,
            "variables": variables or {}
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
                async with session.post(self.assistant_service_url, json=payload) as response:
                    if response.status in (200, 201, 202):
                        return True
                    self.log_util.error(
                        service_name="AssistantHandoffService",
                        message=f"Handoff to assistant {assistant_id} failed with status {response.status}"
                    )
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log_util.error(
                service_name="AssistantHandoffService",
                message=f"Error handing off instance {instance_id} to assistant {assistant_id}: {str(e)}"
            )
            return False
