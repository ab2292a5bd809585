"""General utility functions and classes."""


class MissingConfigurationError(Exception):
    """Error raised when a field needed to open a connection is missing."""


class MicrophoneUnavailableError(Exception):
    """Error raised when the microphone cannot be opened (e.g., permission denied)."""


class AlternativeConstructors:
    """Mixin class for alternative constructors."""

    @classmethod
    def from_cli_args(cls, cli_args, **kwargs):
        """Creates an instance from CLI arguments.

        Options not passed in the command line are taken from the file passed via
        `--config-file`, then from the environment.

        Args:
            cli_args: The command line arguments.
            **kwargs: Additional keyword arguments to pass to the class constructor.

        Returns:
            cls: An instance of the class initialized with CLI-specified configurations.
        """
        configs_model = type(cls.default_configs)
        return cls(configs=configs_model.from_cli_args(cli_args), **kwargs)
