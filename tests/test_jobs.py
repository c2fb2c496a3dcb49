"""
Tests for the background job runner and its time-boxed JobStore.
"""

import threading


class TestJobStore:

    def test_expire_drops_only_finished_jobs_past_ttl(self):
        from passvault.core.jobs import JOB_DONE, JobInfo, JobStore

        store = JobStore(ttl=10)
        running = JobInfo(job_id="a", kind="backup", resource_id="b1")
        finished = JobInfo(job_id="b", kind="sync", resource_id="s1",
                           state=JOB_DONE, finished_mono=100.0)
        store.put(running)
        store.put(finished)

        assert store.expire(now=105.0) == 0
        assert store.expire(now=110.0) == 1
        assert store.get("b") is None
        assert store.get("a") is running

    def test_find_and_running(self):
        from passvault.core.jobs import JOB_DONE, JobInfo, JobStore

        store = JobStore()
        store.put(JobInfo(job_id="a", kind="backup", resource_id="r1"))
        store.put(JobInfo(job_id="b", kind="restore", resource_id="r1", state=JOB_DONE))
        assert {j.job_id for j in store.find("r1")} == {"a", "b"}
        assert [j.job_id for j in store.running()] == ["a"]
        assert len(store) == 2

    def test_sweeper_start_stop(self):
        from passvault.core.jobs import JobStore

        store = JobStore(sweep_interval=3600)
        store.start()
        store.start()  # idempotent
        store.stop()


class TestJobRunner:

    def test_submit_runs_and_marks_done(self):
        from passvault.core.jobs import JOB_DONE, JobRunner

        runner = JobRunner()
        ran = threading.Event()
        job_id = runner.submit("backup", "b1", ran.set)
        assert runner.wait(job_id, timeout=5)
        assert ran.is_set()
        assert runner.store.get(job_id).state == JOB_DONE
        assert runner.store.get(job_id).finished_at

    def test_crashing_body_is_recorded_not_raised(self):
        from passvault.core.jobs import JOB_ERROR, JobRunner

        def boom():
            raise RuntimeError("kaboom")

        runner = JobRunner()
        job_id = runner.submit("sync", "s1", boom)
        assert runner.wait(job_id, timeout=5)
        job = runner.store.get(job_id)
        assert job.state == JOB_ERROR
        assert job.error == "kaboom"

    def test_wait_for_resource_and_wait_all(self):
        from passvault.core.jobs import JobRunner

        gate = threading.Event()
        runner = JobRunner()
        runner.submit("backup", "b1", lambda: gate.wait(5))
        assert runner.wait_for_resource("b1", timeout=0.05) is False
        gate.set()
        assert runner.wait_for_resource("b1", timeout=5)
        assert runner.wait_all(timeout=5)

    def test_wait_unknown_job(self):
        from passvault.core.jobs import JobRunner

        assert JobRunner().wait("missing", timeout=0.01) is False
