class IntegrationError(RuntimeError):
    error_code: str = "integration_error"
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.error_code)
        self.message = message or self.error_code


class MissingCredentialsError(IntegrationError):
    error_code = "missing_credentials"
    status_code = 400


class InvalidConfigError(IntegrationError):
    error_code = "invalid_config"
    status_code = 400


class IntegrationNotFoundError(IntegrationError):
    error_code = "integration_not_found"
    status_code = 404


class IntegrationNotConnectedError(IntegrationError):
    error_code = "integration_not_connected"
    status_code = 400
