import pytest

from trafficguard.detection.events import RequestEvent
from trafficguard.services.engine import build_engine
from trafficguard.services.scheduler import AUTO_TUNE_JOB_ID, SWEEP_JOB_ID, build_scheduler

from conftest import T0


def test_jobs_are_registered(settings, clock):
    engine = build_engine(settings, clock=clock)
    sch = build_scheduler(engine, sweep_interval_sec=60, auto_tune_interval_sec=120)
    jobs = {j.id: j for j in sch.get_jobs()}
    assert set(jobs) == {SWEEP_JOB_ID, AUTO_TUNE_JOB_ID}
    assert jobs[SWEEP_JOB_ID].trigger.interval.total_seconds() == 60
    assert jobs[AUTO_TUNE_JOB_ID].trigger.interval.total_seconds() == 120


@pytest.mark.asyncio
async def test_sweep_job_evicts(settings, clock):
    engine = build_engine(settings, clock=clock)
    engine.evaluate(RequestEvent.create("a", "/", "GET", T0))
    clock.advance(301)
    sch = build_scheduler(engine)
    await sch.get_job(SWEEP_JOB_ID).func()
    assert engine.recorder.sources() == []
