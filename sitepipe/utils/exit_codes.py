"""Exit codes for the sitepipe CLI."""


class ExitCodes:
    """Standard exit codes for sitepipe commands."""

    SUCCESS = 0

    STEP_FAILED = 1
    CONFIG_ERROR = 2

    TASK_INCOMPLETE = 3

    @classmethod
    def get_description(cls, code: int) -> str:
        """Get human-readable description for an exit code."""
        descriptions = {
            cls.SUCCESS: "Success - all steps completed",
            cls.STEP_FAILED: "A pipeline step failed",
            cls.CONFIG_ERROR: "Pipeline configuration is invalid",
            cls.TASK_INCOMPLETE: "Pipeline aborted before all steps ran",
        }
        return descriptions.get(code, f"Unknown exit code: {code}")

    @classmethod
    def should_fail_pipeline(cls, code: int) -> bool:
        """Determine if an exit code should fail a CI/CD job."""
        return code != cls.SUCCESS
