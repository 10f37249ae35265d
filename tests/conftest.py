import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from mediaops.config import Settings
from mediaops.db import Base, create_engine_for
from mediaops.errors import DispatchFailed, ProviderError
from mediaops.lifecycle import intake
from mediaops.models import editing, events, notifications, orders, processing  # noqa: F401
from mediaops.processing.provider import ProviderAccepted
from mediaops.services import build_services


def make_settings(**overrides) -> Settings:
    s = Settings()
    s.PROCESSING_WEBHOOK_SECRET = ""
    s.ARCHIVE_CALLBACKS = False
    s.EDITOR_WORKLOAD_CAP = 5
    s.QC_MAX_REVISIONS = 3
    s.PROCESSING_SLA_MINUTES = 10.0
    s.PROCESSING_TIMEOUT_FACTOR = 3.0
    s.STATUS_TRANSITIONS_PATH = ""
    s.OPS_EMAIL = "ops@example.com"
    s.OPS_PHONE = "+15550199"
    s.ADMIN_USER = "admin"
    s.ADMIN_PASS = "adminpass"
    for k, v in overrides.items():
        setattr(s, k, v)
    return s


class FakeProvider:
    """Stands in for the HDR provider; records submissions."""

    def __init__(self, fail: str | None = None):
        self.fail = fail
        self.submitted = []
        self.statuses = {}
        self.on_submit = None  # async hook(job_id) run before accepting

    async def submit(self, job_id, assets, options=None):
        if self.fail:
            raise ProviderError(self.fail)
        if self.on_submit is not None:
            await self.on_submit(job_id)
        self.submitted.append({"job_id": job_id, "assets": list(assets), "options": options})
        return ProviderAccepted(provider_job_id=f"prov-{len(self.submitted)}")

    async def fetch_status(self, provider_job_id):
        return self.statuses[provider_job_id]


class FakeMessenger:
    def __init__(self, fail_channels=()):
        self.fail_channels = set(fail_channels)
        self.sent = []

    async def dispatch(self, channel, recipient, template_id, variables=None):
        if channel in self.fail_channels:
            raise DispatchFailed(f"{channel} gateway down")
        self.sent.append({
            "channel": channel,
            "recipient": recipient,
            "template_id": template_id,
            "variables": dict(variables or {}),
        })


WALK = ["scheduled", "in_progress", "staged"]


class Harness:
    """
    One isolated database + service graph per scenario:

        async with harness() as h:
            order_id = await h.order()
    """

    def __init__(self, db_path, **overrides):
        self.db_path = db_path
        self.settings = make_settings(**overrides)
        self.provider = FakeProvider()
        self.messenger = FakeMessenger()

    async def __aenter__(self):
        self.engine = create_engine_for(f"sqlite+aiosqlite:///{self.db_path}")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        self.svc = build_services(self.settings, self.sessionmaker, provider=self.provider, messenger=self.messenger)
        self.ctx = self.svc.ctx
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.engine.dispose()
        return False

    # ---------------------------
    # Builders
    # ---------------------------

    async def order(self, status: str = "staged", **kw) -> str:
        kw.setdefault("address", "12 Harbour View Rd")
        kw.setdefault("agent_name", "Dana Agent")
        kw.setdefault("agent_email", "agent@example.com")
        kw.setdefault("agent_phone", "+15550100")
        o = await intake.create_order(self.ctx, **kw)
        if status != "pending":
            for st in WALK[: WALK.index(status) + 1]:
                await self.svc.state_machine.transition(o["id"], st)
        return o["id"]

    async def batch(self, order_id: str, n: int = 3) -> list:
        b = await intake.register_capture_assets(
            self.ctx, order_id,
            [{"ref": f"s3://raw/{order_id}/{i}.dng", "category": "interior"} for i in range(n)],
        )
        return [a["id"] for a in b["assets"]]

    async def submitted(self, n: int = 3, **order_kw):
        order_id = await self.order(**order_kw)
        asset_ids = await self.batch(order_id, n)
        job = await self.svc.tracker.submit(order_id, asset_ids)
        return order_id, asset_ids, job

    async def complete(self, job_id: str, asset_ids) -> dict:
        return await self.svc.tracker.on_callback({
            "job_id": job_id,
            "status": "completed",
            "results": [
                {"asset_id": a, "processed_url": f"s3://hdr/{a}.jpg", "thumbnail_url": f"s3://thumb/{a}.jpg"}
                for a in asset_ids
            ],
        })

    async def processed(self, n: int = 3, **order_kw):
        """Order with a completed job and its pending editing assignment."""
        order_id, asset_ids, job = await self.submitted(n, **order_kw)
        await self.complete(job["id"], asset_ids)
        assignment = await self.assignment_for(job["id"])
        return order_id, asset_ids, assignment

    async def assignment_for(self, job_id: str) -> dict:
        async with self.sessionmaker() as session:
            res = await session.execute(
                select(editing.EditingAssignment).where(editing.EditingAssignment.job_id == job_id)
            )
            a = res.scalars().first()
            return a.snapshot() if a else None

    async def edit_all(self, assignment_id: str, editor_id: str, version: int = 1) -> None:
        a = await self.svc.queue.get(assignment_id)
        for asset_id in a["required_asset_ids"]:
            await self.svc.queue.record_edit(
                assignment_id, asset_id, f"s3://edited/{asset_id}-v{version}.jpg", editor_id,
            )

    async def ready_for_qc(self, editor_id: str = "editor-a", **order_kw):
        order_id, asset_ids, a = await self.processed(**order_kw)
        await self.svc.queue.claim(a["id"], editor_id)
        await self.edit_all(a["id"], editor_id)
        await self.svc.queue.submit(a["id"], editor_id)
        return order_id, asset_ids, a["id"]

    # ---------------------------
    # Reads
    # ---------------------------

    async def count(self, model, *where) -> int:
        async with self.sessionmaker() as session:
            res = await session.execute(select(func.count()).select_from(model).where(*where))
            return int(res.scalar_one())

    async def events(self, order_id: str, event_type: str | None = None) -> list:
        evs = await intake.order_history(self.ctx, order_id)
        return [e for e in evs if event_type is None or e["event_type"] == event_type]

    async def status(self, order_id: str) -> str:
        return (await intake.get_order(self.ctx, order_id))["status"]


@pytest.fixture
def harness(tmp_path):
    counter = {"n": 0}

    def _make(**overrides) -> Harness:
        counter["n"] += 1
        return Harness(tmp_path / f"orchestrator-{counter['n']}.db", **overrides)

    return _make
