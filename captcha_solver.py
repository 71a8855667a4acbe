"""
Image CAPTCHA solving through the Anti-Captcha API
==================================================
Flow for one challenge:

    1. screenshot the CAPTCHA <img> on the current page
    2. createTask (ImageToTextTask, base64 body)
    3. poll getTaskResult every POLL_INTERVAL seconds until status == "ready"
    4. type solution.text into the CAPTCHA input

API docs: https://anti-captcha.com/apidoc
"""

from __future__ import annotations

import asyncio
import base64
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiohttp
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

log = logging.getLogger("captcha_solver")

# ──────────────────────────────────────────────────────────────────────────────
# Config
# ──────────────────────────────────────────────────────────────────────────────
ANTICAPTCHA_API    = "https://api.anti-captcha.com"
POLL_INTERVAL      = 5        # seconds between getTaskResult calls
MAX_POLL_ATTEMPTS  = 60       # ~5 min at the default interval
REQUEST_TIMEOUT    = 30       # seconds per API call
ELEMENT_TIMEOUT_MS = 60_000   # wait for the CAPTCHA <img>

CAPTCHA_IMAGE_SELECTOR = 'img[src*="captcha"]'
CAPTCHA_INPUT_SELECTOR = 'input[name="captchaText"]'
CAPTCHA_IMAGE_FILE     = "captcha.png"


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────

class CaptchaError(Exception):
    """Base class for CAPTCHA solving failures."""


class CaptchaTaskError(CaptchaError):
    """The API answered with errorId != 0."""

    def __init__(self, code: Optional[str], description: Optional[str]):
        self.code = code
        self.description = description
        super().__init__(f"{code or 'ERROR'}: {description or 'no description'}")


class CaptchaTimeout(CaptchaError):
    """The task was not ready after the maximum number of polls."""


# ──────────────────────────────────────────────────────────────────────────────
# API client
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class CaptchaTask:
    task_id: int
    image_b64: str
    text: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.text is not None


class AntiCaptchaClient:
    """
    Minimal async client for the createTask / getTaskResult endpoints.

    Use as an async context manager; a session passed in by the caller is
    used as-is and left open on exit.
    """

    def __init__(
        self,
        api_key: str,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = ANTICAPTCHA_API,
        poll_interval: float = POLL_INTERVAL,
        max_attempts: Optional[int] = MAX_POLL_ATTEMPTS,
        request_timeout: float = REQUEST_TIMEOUT,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        # None or <= 0 polls until ready
        self.max_attempts = max_attempts if max_attempts and max_attempts > 0 else None
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = False

    async def __aenter__(self) -> AntiCaptchaClient:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def _call(self, method: str, payload: dict) -> dict:
        if self._session is None:
            raise RuntimeError("AntiCaptchaClient used outside 'async with'")
        body = {"clientKey": self.api_key, **payload}
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        async with self._session.post(f"{self.base_url}/{method}", json=body, timeout=timeout) as resp:
            resp.raise_for_status()
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise CaptchaError(f"Non-JSON {method} response: {exc}") from exc

        if not isinstance(data, dict):
            raise CaptchaError(f"Unexpected {method} response: {data!r}")
        if data.get("errorId", 0) != 0:
            raise CaptchaTaskError(data.get("errorCode"), data.get("errorDescription"))
        return data

    async def create_task(self, image_b64: str) -> CaptchaTask:
        data = await self._call("createTask", {
            "task": {"type": "ImageToTextTask", "body": image_b64},
        })
        task_id = data.get("taskId")
        if task_id is None:
            raise CaptchaError(f"Malformed createTask response: {data!r}")
        task = CaptchaTask(task_id=task_id, image_b64=image_b64)
        log.info(f"CAPTCHA task created, taskId: {task.task_id}")
        return task

    async def get_task_result(self, task_id: int) -> dict:
        return await self._call("getTaskResult", {"taskId": task_id})

    async def wait_for_result(self, task: CaptchaTask) -> str:
        """Poll until the task is ready and return its solved text."""
        attempt = 0
        while self.max_attempts is None or attempt < self.max_attempts:
            attempt += 1
            await asyncio.sleep(self.poll_interval)
            result = await self.get_task_result(task.task_id)
            status = result.get("status")
            log.debug(f"  poll #{attempt} task {task.task_id}: {status}")
            if status == "ready":
                solution = result.get("solution")
                text = solution.get("text") if isinstance(solution, dict) else None
                if not isinstance(text, str):
                    raise CaptchaError(f"Malformed getTaskResult response: {result!r}")
                task.text = text
                return task.text

        raise CaptchaTimeout(
            f"Task {task.task_id} not ready after {attempt} polls "
            f"({attempt * self.poll_interval:.0f}s)"
        )


# ──────────────────────────────────────────────────────────────────────────────
# Page-level solver
# ──────────────────────────────────────────────────────────────────────────────

class CaptchaSolver:
    """Solve the image CAPTCHA shown on a Playwright page and type the answer."""

    def __init__(
        self,
        client: AntiCaptchaClient,
        image_path=CAPTCHA_IMAGE_FILE,
        image_selector: str = CAPTCHA_IMAGE_SELECTOR,
        input_selector: str = CAPTCHA_INPUT_SELECTOR,
        element_timeout_ms: int = ELEMENT_TIMEOUT_MS,
    ):
        self.client = client
        self.image_path = Path(image_path)
        self.image_selector = image_selector
        self.input_selector = input_selector
        self.element_timeout_ms = element_timeout_ms

    async def _capture_image(self, page) -> str:
        log.info("Waiting for CAPTCHA element…")
        image = page.locator(self.image_selector).first
        await image.wait_for(state="visible", timeout=self.element_timeout_ms)
        log.info("CAPTCHA element found.")

        await image.screenshot(path=str(self.image_path))
        log.info(f"CAPTCHA screenshot saved at: {self.image_path}")
        return base64.b64encode(self.image_path.read_bytes()).decode("ascii")

    async def _enter_text(self, page, text: str) -> None:
        field = page.locator(self.input_selector).first
        await field.wait_for(state="visible", timeout=self.element_timeout_ms)
        await field.fill("")
        await field.press_sequentially(text, delay=random.randint(45, 100))

    async def solve(self, page) -> bool:
        """Returns True once the solved text has been typed, False on any failure."""
        try:
            image_b64 = await self._capture_image(page)
            task = await self.client.create_task(image_b64)
            text = await self.client.wait_for_result(task)
            log.info(f"Solved CAPTCHA: {text}")
            await self._enter_text(page, text)
            return True
        except PlaywrightTimeoutError as exc:
            log.error(f"CAPTCHA element not found within {self.element_timeout_ms} ms: {exc}")
        except PlaywrightError as exc:
            log.error(f"Browser error while solving CAPTCHA: {exc}")
        except CaptchaTaskError as exc:
            log.error(f"Anti-Captcha rejected the task: {exc}")
        except CaptchaError as exc:
            log.error(f"CAPTCHA not solved: {exc}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.error(f"Anti-Captcha request failed: {exc!r}")
        except OSError as exc:
            log.error(f"Could not read CAPTCHA image {self.image_path}: {exc}")
        return False
