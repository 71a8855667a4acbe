#!/usr/bin/env python3
"""
RK-Termin (German mission, Karachi) – Appointment Booking Script (Playwright)
=============================================================================
Usage:
    python book_appointment.py                       # uses ./config.json
    python book_appointment.py --config me.json      # other applicant file
    python book_appointment.py --headful             # visible browser
    python book_appointment.py --max-polls 0         # poll Anti-Captcha forever

The Anti-Captcha key is read from --api-key or ANTICAPTCHA_API_KEY.

Requirements:
    pip install playwright aiohttp pandas && python -m playwright install chromium
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import random
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from applicant import Applicant, ConfigError, load_applicant
from captcha_solver import (
    MAX_POLL_ATTEMPTS,
    POLL_INTERVAL,
    AntiCaptchaClient,
    CaptchaSolver,
)

log = logging.getLogger("book_appointment")

# ──────────────────────────────────────────────────────────────────────────────
# Config
# ──────────────────────────────────────────────────────────────────────────────
APPOINTMENT_URL = (
    "https://service2.diplo.de/rktermin/extern/appointment_showMonth.do"
    "?locationCode=kara&realmId=967&categoryId=2801"
)
AVAILABLE_LINK_TEXT = "Appointments are available"

CONFIG_PATH = Path(os.getenv("RKTERMIN_CONFIG", "config.json"))
LOG_DIR     = Path("logs")
NAV_TIMEOUT = 60_000  # ms

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/92.0.4515.159 Safari/537.36"
)
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
]
BLOCKED_RESOURCE_TYPES = {"image", "stylesheet", "font", "media", "other"}

# ──────────────────────────────────────────────────────────────────────────────
# Selectors
# ──────────────────────────────────────────────────────────────────────────────
SELECTORS = {
    "submit":      'input[type="submit"]',

    # Booking form (appointment_newAppointmentForm)
    "lastname":    "#appointment_newAppointmentForm_lastname",
    "firstname":   "#appointment_newAppointmentForm_firstname",
    "email":       "#appointment_newAppointmentForm_email",
    "emailrepeat": "#appointment_newAppointmentForm_emailrepeat",
    "passport":    "#appointment_newAppointmentForm_fields_0__content",
    "province":    "#appointment_newAppointmentForm_fields_1__content",
    "country":     "#appointment_newAppointmentForm_fields_2__content",
}

# (selector key, Applicant attribute) in typing order
FORM_FIELDS = [
    ("lastname",    "lastname"),
    ("firstname",   "firstname"),
    ("email",       "email"),
    ("emailrepeat", "email"),
    ("passport",    "passport_number"),
    ("province",    "province"),
    ("country",     "country"),
]

_FIND_LINK_JS = """
(text) => {
    const link = [...document.querySelectorAll('a')]
        .find(el => (el.innerText || '').includes(text));
    return link ? link.href : null;
}
"""


class BookingError(RuntimeError):
    """A step of the booking flow could not be completed."""


# ──────────────────────────────────────────────────────────────────────────────
# Logging
# ──────────────────────────────────────────────────────────────────────────────

def setup_logging(log_dir: Path = LOG_DIR, verbose: bool = False) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-7s  %(message)s",
        datefmt="%H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_dir / "book_appointment.log", encoding="utf-8"),
        ],
    )


# ──────────────────────────────────────────────────────────────────────────────
# Browser launch
# ──────────────────────────────────────────────────────────────────────────────

def block_heavy_resources(request) -> bool:
    """Default request filter: drop assets the flow never looks at, keep the CAPTCHA image."""
    if request.resource_type not in BLOCKED_RESOURCE_TYPES:
        return False
    if request.resource_type == "image" and "captcha" in request.url.lower():
        return False
    return True


def make_route_handler(should_block: Callable):
    async def _handle(route):
        if should_block(route.request):
            await route.abort()
        else:
            await route.continue_()
    return _handle


@asynccontextmanager
async def open_page(
    headless: bool = True,
    user_agent: str = USER_AGENT,
    should_block: Optional[Callable] = block_heavy_resources,
):
    """Launch Chromium and yield one page; the browser is closed on exit, error or not."""
    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=headless, args=BROWSER_ARGS)
        log.info(f"Chromium started (headless={headless})")
        try:
            context = await browser.new_context(user_agent=user_agent)
            page = await context.new_page()
            if should_block is not None:
                await page.route("**/*", make_route_handler(should_block))
            yield page
        finally:
            await browser.close()
            log.info("Browser closed.")


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

async def save_screenshot(page, output_dir: Path, filename: str) -> Path:
    path = Path(output_dir) / filename
    await page.screenshot(path=str(path))
    log.info(f"Screenshot saved as {path}")
    return path


async def dump_error_page(page, output_dir: Path) -> Optional[Path]:
    """Save error_page.html and error_page.png; each part is attempted on its own."""
    output_dir = Path(output_dir)
    html_path = None
    try:
        html = await page.content()
        html_path = output_dir / "error_page.html"
        html_path.write_text(html, encoding="utf-8")
        log.info(f"Page HTML saved → {html_path}")
    except (PlaywrightError, OSError) as exc:
        log.warning(f"Could not save page HTML: {exc}")
        html_path = None

    try:
        await save_screenshot(page, output_dir, "error_page.png")
    except (PlaywrightError, OSError) as exc:
        log.warning(f"Could not save error screenshot: {exc}")

    return html_path


async def find_available_link(page, text: str = AVAILABLE_LINK_TEXT) -> Optional[str]:
    """Return the href of the first <a> whose text contains `text`, or None."""
    return await page.evaluate(_FIND_LINK_JS, text)


async def fill_booking_form(page, applicant: Applicant) -> None:
    for key, attr in FORM_FIELDS:
        value = getattr(applicant, attr)
        field = page.locator(SELECTORS[key]).first
        await field.fill("")
        await field.press_sequentially(value, delay=random.randint(45, 100))
        log.debug(f"  Filled '{key}' = '{value}'")


# ──────────────────────────────────────────────────────────────────────────────
# Booking flow
# ──────────────────────────────────────────────────────────────────────────────

async def run_booking(
    page,
    applicant: Applicant,
    solver,
    url: str = APPOINTMENT_URL,
    output_dir: Path = Path("."),
) -> dict:
    """
    Walk the two-page RK-Termin flow on an open page.
    Returns a result dict with 'outcome', 'error', 'screenshots', 'error_page' keys.
    """
    output_dir = Path(output_dir)
    result = {
        "outcome": "failed", "error": None,
        "screenshots": [], "error_page": None,
        "applicant": applicant.name,
        "timestamp": datetime.now().isoformat(),
    }

    async def shot(filename: str) -> None:
        result["screenshots"].append(await save_screenshot(page, output_dir, filename))

    try:
        log.info("Navigating to the appointment page…")
        await page.goto(url, wait_until="networkidle", timeout=NAV_TIMEOUT)
        await shot("process1.png")

        # ─ Step 1: CAPTCHA on the month view ───────────────────────────
        log.info("Solving CAPTCHA…")
        if not await solver.solve(page):
            raise BookingError("Failed to solve CAPTCHA.")
        log.info("CAPTCHA solved. Submitting form…")
        async with page.expect_navigation(wait_until="networkidle", timeout=NAV_TIMEOUT):
            await page.click(SELECTORS["submit"])
        await shot("process2.png")

        # ─ Step 2: availability ────────────────────────────────────────
        log.info("Checking for available appointments…")
        href = await find_available_link(page)
        if not href:
            log.info("No appointments available.")
            await shot("no_appointments_available.png")
            result["outcome"] = "no_appointments"
            return result

        log.info(f"Available appointments found. Navigating to {href}")
        await page.goto(href, wait_until="networkidle", timeout=NAV_TIMEOUT)
        await shot("appointments_available.png")

        # ─ Step 3: booking form ────────────────────────────────────────
        log.info("Filling out the appointment booking form…")
        await fill_booking_form(page, applicant)
        await shot("process3.png")

        # ─ Step 4: second CAPTCHA + submit ─────────────────────────────
        log.info("Solving CAPTCHA again before submission…")
        if not await solver.solve(page):
            raise BookingError("Failed to solve final CAPTCHA.")
        await page.click(SELECTORS["submit"])
        await shot("process4.png")

        log.info("Form submitted successfully!")
        result["outcome"] = "booked"

    except Exception as exc:
        result["error"] = str(exc) or type(exc).__name__
        log.error(f"Error during the process: {result['error']}")
        log.debug("Traceback:", exc_info=True)
        result["error_page"] = await dump_error_page(page, output_dir)

    return result


async def book(
    applicant: Applicant,
    api_key: str,
    url: str = APPOINTMENT_URL,
    output_dir: Path = Path("."),
    headless: bool = True,
    poll_interval: float = POLL_INTERVAL,
    max_polls: Optional[int] = MAX_POLL_ATTEMPTS,
) -> dict:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    async with AntiCaptchaClient(api_key, poll_interval=poll_interval, max_attempts=max_polls) as client:
        solver = CaptchaSolver(client, image_path=output_dir / "captcha.png")
        async with open_page(headless=headless) as page:
            return await run_booking(page, applicant, solver, url=url, output_dir=output_dir)


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────

def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or greater, got {number}")
    return number


def save_result(result: dict, output_dir: Path) -> Path:
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    out = Path(output_dir) / f"booking_result_{ts}.json"
    with open(out, "w", encoding="utf-8") as f:
        json.dump(result, f, indent=2, ensure_ascii=False, default=str)
    log.info(f"Result saved → {out}")
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RK-Termin appointment booking")
    parser.add_argument("--config",        default=str(CONFIG_PATH), help="Applicant config (JSON object or CSV)")
    parser.add_argument("--url",           default=APPOINTMENT_URL, help="Appointment month-view URL")
    parser.add_argument("--output-dir",    default=".", help="Where screenshots and dumps are written")
    parser.add_argument("--api-key",       default=os.getenv("ANTICAPTCHA_API_KEY"),
                        help="Anti-Captcha client key (default: $ANTICAPTCHA_API_KEY)")
    parser.add_argument("--headful",       action="store_true", help="Show the browser window")
    parser.add_argument("--poll-interval", type=float, default=POLL_INTERVAL, help="Seconds between CAPTCHA result polls")
    parser.add_argument("--max-polls",     type=non_negative_int, default=MAX_POLL_ATTEMPTS, help="Max CAPTCHA result polls (0 = unlimited)")
    parser.add_argument("--log-dir",       default=str(LOG_DIR), help="Directory for book_appointment.log")
    parser.add_argument("--verbose",       action="store_true", help="Debug logging")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(Path(args.log_dir), verbose=args.verbose)

    try:
        applicant = load_applicant(args.config)
    except ConfigError as exc:
        log.error(str(exc))
        return 1

    if not args.api_key:
        log.error("No Anti-Captcha key – pass --api-key or set ANTICAPTCHA_API_KEY.")
        return 1

    output_dir = Path(args.output_dir)
    result = asyncio.run(book(
        applicant,
        args.api_key,
        url=args.url,
        output_dir=output_dir,
        headless=not args.headful,
        poll_interval=args.poll_interval,
        max_polls=args.max_polls or None,
    ))
    save_result(result, output_dir)

    print(f"\n{'='*52}")
    print(f"  {result['applicant']}  |  {result['outcome'].upper()}")
    if result["error"]:
        print(f"  error: {result['error']}")
    for path in result["screenshots"]:
        print(f"  → {path}")
    print("="*52)

    return 1 if result["outcome"] == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
