from coreason_devbox.config import DevboxConfig
from coreason_devbox.runtime import SandboxRuntime
from coreason_devbox.runtimes.e2b import E2BRuntime


class SandboxFactory:
    """
    Factory to create SandboxRuntime instances based on configuration.
    """

    @staticmethod
    def get_runtime(config: DevboxConfig) -> SandboxRuntime:
        """
        Returns an unstarted instance of the configured SandboxRuntime.
        """
        if config.runtime == "e2b":
            return E2BRuntime(
                api_key=config.e2b_api_key,
                template=config.e2b_template,
                sandbox_timeout=config.sandbox_timeout,
                retry_attempts=config.retry_attempts,
                retry_backoff_max=config.retry_backoff_max,
            )
        # This should be unreachable due to Pydantic validation, but for safety:
        raise ValueError(f"Unknown runtime: {config.runtime}")  # pragma: no cover
