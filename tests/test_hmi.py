import os
import queue
from types import SimpleNamespace

import numpy as np
from aiohttp.test_utils import AioHTTPTestCase

from core.compositor import FrameCompositor, Viewport
from core.contracts import CaptureRecord
from core.pipeline import BoothPipeline
from core.timers import ManualScheduler
from output.backgrounds import BackgroundAsset, BackgroundCatalog
from output.hmi import HmiOutput
from output.manager import OutputManager, ResultStore
from trigger.gateway import CMD_AUTO, CMD_NEXT_BG, CMD_SET_BG, TriggerGateway

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
INDEX_PATH = os.path.join(REPO_ROOT, "output", "web", "index.html")


class TestHmiRoutes(AioHTTPTestCase):
    async def get_application(self):
        self.trigger_queue = queue.Queue()
        self.store = ResultStore(REPO_ROOT, write_csv=False)
        self.outputs = OutputManager(self.store)
        catalog = BackgroundCatalog([BackgroundAsset("beach", "beach.jpg", "Beach")])
        booth = BoothPipeline(
            FrameCompositor((32, 24), Viewport(4, 4, 8, 8)),
            backgrounds=catalog,
            scheduler=ManualScheduler(start_ms=1),
        )
        ctx = SimpleNamespace(
            trigger_gateway=TriggerGateway(self.trigger_queue, debounce_ms=0),
            results=self.outputs,
            booth=booth,
            backgrounds=catalog,
        )
        self.hmi = HmiOutput("127.0.0.1", 0, ctx, INDEX_PATH, loop_runner=None)
        return self.hmi.app

    def _queued(self):
        out = []
        while not self.trigger_queue.empty():
            out.append(self.trigger_queue.get_nowait())
        return out

    async def test_index_served(self):
        resp = await self.client.get("/")
        self.assertEqual(resp.status, 200)
        self.assertIn("SnapBooth", await resp.text())

    async def test_status_snapshot_and_since_seq(self):
        for seq in (1, 2):
            self.outputs.publish(
                CaptureRecord(capture_seq=seq, source="WEB", mode="manual", result="OK", path=f"/x/p{seq}.png")
            )
        resp = await self.client.get("/status")
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertEqual(body["booth"]["state"], "idle")
        self.assertEqual([b["id"] for b in body["backgrounds"]], ["none", "blur", "beach"])
        self.assertEqual([r["capture_seq"] for r in body["records"]], [2, 1])
        self.assertEqual(body["records"][0]["file"], "p2.png")
        self.assertEqual(body["latest_seq"], 2)
        self.assertTrue(body["full_snapshot"])

        body = await (await self.client.get("/status?since_seq=1")).json()
        self.assertEqual([r["capture_seq"] for r in body["records"]], [2])
        self.assertFalse(body["full_snapshot"])

        body = await (await self.client.get("/status?since_seq=9")).json()
        self.assertTrue(body["full_snapshot"])

    async def test_preview(self):
        resp = await self.client.get("/preview/latest")
        self.assertEqual(resp.status, 404)
        self.outputs.publish_frame(1, np.zeros((8, 8, 3), dtype=np.uint8))
        resp = await self.client.get("/preview/latest")
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.headers["Content-Type"], "image/jpeg")

    async def test_command_routes_queue_events(self):
        resp = await self.client.post("/trigger/auto")
        self.assertEqual(await resp.json(), {"accepted": True})
        await self.client.post("/background/next")
        self.assertEqual([e.command for e in self._queued()], [CMD_AUTO, CMD_NEXT_BG])

    async def test_set_background_validation(self):
        resp = await self.client.post("/background", data="not json")
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/background", json={"name": "beach"})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/background", json={"id": "moon"})
        self.assertEqual(resp.status, 404)
        resp = await self.client.post("/background", json={"id": "beach"})
        self.assertEqual(await resp.json(), {"accepted": True})
        (event,) = self._queued()
        self.assertEqual((event.command, event.payload), (CMD_SET_BG, "beach"))
