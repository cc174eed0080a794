# relayci_pipeline.py
# Pipeline for relayci itself: lint, tests, and a wheel handed to a release job
from __future__ import annotations

from relayci.dsl import action, job, on_pull_request, on_push, pipeline, sh


def _checkout():
    return action("checkout")


PIPELINE = pipeline(
    "relayci",

    # Lint job - runs ruff on the codebase
    job(
        "lint",
        _checkout(),
        sh("Ruff check", "ruff check src tests"),
        sh("Ruff format check", "ruff format --check src tests", continue_on_error=True),
    ),

    # Test job - runs pytest on the codebase
    job(
        "test",
        _checkout(),
        sh("Install package", "pip install -e '.[test]'"),
        sh("Run pytest", "pytest -q"),
        needs=["lint"],
        cache_paths=[".venv"],
        cache_key="venv-${{ trigger.branch }}",
    ),

    # Build job - produces the wheel consumed by publish
    job(
        "build",
        _checkout(),
        sh("Build wheel", "python -m pip wheel --no-deps -w dist ."),
        action("upload-artifact", with_={"name": "dist", "path": "dist"}),
        needs=["test"],
    ),

    # Publish only from the release branch, one at a time per ref
    job(
        "publish",
        action("download-artifact", with_={"name": "dist"}),
        sh(
            "Upload to index",
            "twine upload dist/*",
            env={"TWINE_PASSWORD": "${{ secrets.PYPI_TOKEN }}", "TWINE_USERNAME": "__token__"},
        ),
        needs=["build"],
        when="trigger.branch == 'release'",
        secrets=["PYPI_TOKEN"],
        environment="pypi",
        concurrency="publish-${{ trigger.ref }}",
    ),

    on=[on_push("main", "release"), on_pull_request("main")],
)
