# release_pipeline.py
# Release flow: version -> multi-arch build + package -> docs/scan -> notify,
# with a rollback job that only runs when something upstream failed.
# Commands are dry-run echoes; swap in real tooling per project.
from __future__ import annotations

from ciflow.dsl import always, choice, define_pipeline, job, matrix, on_failure, set_output, sh, triggers

IMAGE = "${{ env.REGISTRY }}/${{ env.IMAGE_NAME }}"
VERSION = "${{ needs.initialize.outputs.release_version }}"


def pipeline():
    return define_pipeline(
        "release",
        job(
            "initialize",
            sh(
                "Generate semantic version",
                'case "$BUMP" in '
                "major) v=1.0.0 ;; minor) v=0.2.0 ;; *) v=0.1.1 ;; esac; "
                'echo "release_version=v$v" >> "$CIFLOW_OUTPUT"',
                id="version",
                env={"BUMP": "${{ inputs.semver }}"},
                outputs=["release_version"],
            ),
            set_output(
                "Determine release channel",
                id="channel",
                release_channel="${{ inputs.environment == 'production' && 'stable' || 'unstable' }}",
            ),
            outputs={
                "release_version": "${{ steps.version.outputs.release_version }}",
                "release_channel": "${{ steps.channel.outputs.release_channel }}",
            },
            display_name="Initialize Release",
        ),
        job(
            "build",
            sh(
                "Build and push Docker image",
                f"echo docker buildx build --platform ${{{{ matrix.platform }}}} "
                f"-t {IMAGE}:{VERSION} "
                f"-t {IMAGE}:${{{{ needs.initialize.outputs.release_channel }}}}-latest .",
            ),
            needs="initialize",
            matrix=matrix(platform=["linux/amd64", "linux/arm64"]),
            display_name="Build Artifacts",
        ),
        job(
            "publish-pypi",
            sh("Build Python package", "echo python -m build --sdist --wheel --outdir dist/"),
            sh("Validate package", "echo twine check dist/*"),
            sh(
                "Publish to PyPI",
                "echo twine upload --skip-existing dist/*",
                if_="${{ inputs.environment == 'production' }}",
            ),
            needs="initialize",
            display_name="Publish to PyPI",
        ),
        job(
            "deploy-docs",
            sh("Build docs", "echo mkdocs build --strict --site-dir public/"),
            sh(
                "Deploy to S3",
                f"echo aws s3 sync public/ s3://${{{{ env.AWS_S3_BUCKET }}}}/docs/{VERSION}/",
            ),
            needs=["initialize", "build"],
            display_name="Deploy Documentation",
        ),
        job(
            "security-scan",
            sh("Scan Docker image", f"echo trivy image --severity CRITICAL,HIGH {IMAGE}:{VERSION}"),
            needs=["initialize", "build", "publish-pypi"],
            display_name="Post-Release Security Scan",
        ),
        job(
            "notify",
            sh(
                "Send release notification",
                'echo "[$COLOR] $TITLE"',
                env={
                    "COLOR": "${{ job.status == 'success' && '#36a64f' || '#ff0000' }}",
                    "TITLE": f"Release {VERSION} (${{{{ inputs.environment }}}})",
                },
            ),
            needs=["initialize", "security-scan", "deploy-docs"],
            if_=always(),
            display_name="Release Notification",
        ),
        job(
            "rollback",
            sh("Delete Git tag", f"echo git push --delete origin {VERSION}"),
            sh("Rollback Docker tags", f"echo docker rmi {IMAGE}:{VERSION}"),
            needs=["initialize", "notify"],
            if_=on_failure(),
            display_name="Rollback Mechanism",
        ),
        on=triggers(
            choice(
                "environment", "staging", "production",
                description="Target environment", required=True, default="staging",
            ),
            choice(
                "semver", "major", "minor", "patch",
                description="SemVer bump type", required=True, default="minor",
            ),
        ),
        env={
            "REGISTRY": "ghcr.io",
            "IMAGE_NAME": "example/app",
            "AWS_S3_BUCKET": "example-releases",
        },
    )
