# stageci_workflow.py
# Pipeline for stageci itself: lint, tests, packaging
from __future__ import annotations
from stageci.dsl import wf, job, template, artifacts, retry, rule


def workflow():
    return wf(
        # Shared settings for every python job
        template(
            "python-env",
            before_script=["pip install -e '.[test]'"],
            cache={"paths": [".venv", ".pytest_cache"]},
            interruptible=True,
            retry=retry(2, "runner_system_failure", "api_failure"),
        ),

        # Lint job - runs ruff on the codebase
        job(
            "lint",
            "ruff check src tests",
            stage="check",
            extends=".python-env",
            needs=[],
        ),

        # Format check job - ensures code is properly formatted
        job(
            "format-check",
            "ruff format --check src tests",
            stage="check",
            extends=".python-env",
            needs=[],
        ),

        # Test job - runs pytest once lint is green
        job(
            "test",
            "pytest -q --junitxml=reports/junit.xml",
            stage="test",
            extends=".python-env",
            needs=["lint"],
            artifacts=artifacts("reports/", when="always", expire_in="7 days"),
        ),

        # Build sdist + wheel once the test stage passed
        job(
            "package",
            "python -m build --outdir dist/",
            stage="build",
            extends=".python-env",
            artifacts=artifacts("dist/", expire_in="30 days"),
        ),

        # Publish only from tags
        job(
            "publish",
            "twine upload dist/*",
            stage="publish",
            dependencies=["package"],
            rules=[rule(ref_kind="tag")],
            retry=retry(1, "api_failure"),
        ),
        stages=["check", "test", "build", "publish"],
        variables={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
    )
