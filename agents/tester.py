#!/usr/bin/env python3
"""
Tester Agent — mounts an artifact in headless Chromium and collects its diagnostics.

The artifact is instrumented and embedded in the same sandboxed host page the
browser preview uses; the host page forwards every iframe-debug message to
Python through an exposed binding, straight into a DiagnosticsChannel.
"""
import logging, sys, time
from typing import Optional

import config
from agents.errors import PreviewError
from sandbox.diagnostics import DiagnosticsChannel
from sandbox.instrument import instrument
from sandbox.surface import PLAYWRIGHT_BRIDGE, render_host_page

log = logging.getLogger("tester")


class TesterAgent:
    def __init__(self, timeout: float = config.PREVIEW_TIMEOUT, settle_ms: int = 1500,
                 viewport=(390, 844)):
        self.timeout   = timeout
        self.settle_ms = settle_ms
        self.viewport  = {"width": viewport[0], "height": viewport[1]}

    def test(self, html: str, channel: Optional[DiagnosticsChannel] = None) -> DiagnosticsChannel:
        from playwright.sync_api import Error as PWError, sync_playwright

        channel = channel or DiagnosticsChannel()
        channel.clear()
        page_html = render_host_page(instrument(html), PLAYWRIGHT_BRIDGE)

        log.info("🎭 Launching Chromium (headless)...")
        try:
            with sync_playwright() as pw:
                browser = pw.chromium.launch(headless=True)
                try:
                    page = browser.new_page(viewport=self.viewport)
                    page.expose_function("__forwardDebug", channel.handle)
                    page.set_content(page_html, wait_until="load", timeout=self.timeout * 1000)

                    deadline = time.monotonic() + self.timeout
                    while not channel.is_ready and time.monotonic() < deadline:
                        page.wait_for_timeout(100)
                    if channel.is_ready:
                        log.info("   ✅ Artifact signalled ready")
                    else:
                        log.warning(f"   ⚠ No ready signal after {self.timeout}s")

                    # Late errors (timers, first animation frames) land during the settle window
                    page.wait_for_timeout(self.settle_ms)
                    page.evaluate("() => window.__sendCommand('getErrors')")
                    page.wait_for_timeout(200)
                finally:
                    browser.close()
        except PWError as e:
            log.error(f"   Playwright runtime error: {e}")
            raise PreviewError(f"Preview failed: {e}") from e

        errors = channel.errors
        if errors:
            log.warning(f"   ❌ {len(errors)} issue(s) found")
            for e in errors[:5]:
                log.warning(f"   • {e.category or 'Error'}: {(e.message or '')[:160]}")
        else:
            log.info("   🎉 No runtime errors")
        return channel


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    if len(sys.argv) != 2:
        print("usage: python -m agents.tester <file.html>")
        sys.exit(2)
    with open(sys.argv[1], encoding="utf-8") as f:
        result = TesterAgent().test(f.read())
    print(result.summary() or "No errors.")
    sys.exit(1 if result.has_errors else 0)
