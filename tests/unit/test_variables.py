from stageci.model import Job, RefKind, RunContext
from stageci.variables import expand, job_environment, predefined_variables


def mk(**kw):
    kw.setdefault("name", "build-std")
    kw.setdefault("stage", "build")
    kw.setdefault("script", ("make",))
    return Job(**kw)


class TestExpand:
    def test_braced_and_bare(self):
        env = {"A": "1", "B_2": "two"}

        assert expand("${A}-$B_2", env) == "1-two"

    def test_unknown_is_empty(self):
        assert expand("x${NOPE}y", {}) == "xy"

    def test_plain_dollar_is_kept(self):
        assert expand("cost: $5", {}) == "cost: $5"


class TestPredefined:
    def test_branch_run(self):
        ctx = RunContext(ref_name="main", commit="abc", run_id="r1", project="ink")
        env = predefined_variables(mk(), ctx, project_dir="/ws")

        assert env["CI"] == "true"
        assert env["CI_JOB_NAME"] == "build-std"
        assert env["CI_JOB_STAGE"] == "build"
        assert env["CI_COMMIT_REF_NAME"] == "main"
        assert env["CI_COMMIT_BRANCH"] == "main"
        assert "CI_COMMIT_TAG" not in env
        assert env["CI_COMMIT_SHA"] == "abc"
        assert env["CI_PIPELINE_ID"] == "r1"
        assert env["CI_PIPELINE_SOURCE"] == "push"
        assert env["CI_PROJECT_NAME"] == "ink"
        assert env["CI_PROJECT_DIR"] == "/ws"

    def test_tag_run(self):
        ctx = RunContext(ref_name="v1.0", ref_kind=RefKind.TAG)
        env = predefined_variables(mk(), ctx)

        assert env["CI_COMMIT_TAG"] == "v1.0"
        assert "CI_COMMIT_BRANCH" not in env


class TestJobEnvironment:
    def test_scopes_and_expansion(self):
        ctx = RunContext(ref_name="main", project="ink")
        job = mk(variables={"TARGET": "/cache/${CI_PROJECT_NAME}/${CI_JOB_NAME}", "MODE": "job"})
        env = job_environment(job, ctx, {"MODE": "pipeline", "GIT_DEPTH": "100"})

        assert env["MODE"] == "job"
        assert env["GIT_DEPTH"] == "100"
        assert env["TARGET"] == "/cache/ink/build-std"

    def test_predefined_cannot_be_overridden(self):
        ctx = RunContext(ref_name="main")
        env = job_environment(mk(variables={"CI_JOB_NAME": "spoofed"}), ctx, {})

        assert env["CI_JOB_NAME"] == "build-std"

    def test_expansion_is_single_pass(self):
        ctx = RunContext(ref_name="main")
        env = job_environment(mk(), ctx, {"A": "$B", "B": "$C", "C": "deep"})

        assert env["A"] == "$C"
