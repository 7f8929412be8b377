"""
Breeding collaborator client - hands a finalized, ranked cohort to the breeding service
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger


@dataclass
class BreedingResult:
    ok: bool
    agents_created: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "agents_created": self.agents_created, "error": self.error}


class BreedingClient:
    """POSTs ``{ended_generation_id, new_generation_id, ranked_agents}`` to the breeding endpoint"""

    def __init__(self, url: Optional[str], timeout_seconds: float = 10.0, auth_token: Optional[str] = None):
        """
        Args:
            url: Breeding endpoint; None disables breeding
            timeout_seconds: Total request deadline
            auth_token: Optional bearer token
        """
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.auth_token = auth_token

    async def breed(
        self,
        ended_generation_id: str,
        new_generation_id: str,
        ranked_agents: List[Dict[str, Any]],
    ) -> BreedingResult:
        if not self.url:
            return BreedingResult(ok=False, error="breeding_not_configured")

        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        payload = {
            "ended_generation_id": ended_generation_id,
            "new_generation_id": new_generation_id,
            "ranked_agents": ranked_agents,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload, headers=headers) as response:
                    data = await response.json(content_type=None)
                    if response.status >= 400 or not data or not data.get("ok"):
                        error = (data or {}).get("error") or f"http_{response.status}"
                        logger.error(f"Breeding rejected for generation {new_generation_id}: {error}")
                        return BreedingResult(ok=False, error=str(error))
                    created = int(data.get("agents_created") or 0)
                    logger.info(f"Breeding created {created} agents for generation {new_generation_id}")
                    return BreedingResult(ok=True, agents_created=created)
        except asyncio.TimeoutError:
            logger.error(f"Breeding request exceeded {self.timeout_seconds}s")
            return BreedingResult(ok=False, error="breeding_timeout")
        except (aiohttp.ClientError, ValueError) as e:
            logger.error(f"Breeding request failed: {e}")
            return BreedingResult(ok=False, error=str(e))
