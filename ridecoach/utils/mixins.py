from typing import cast

import structlog


class LoggerMixin:
    """Gives service classes a structlog logger bound to their component name."""

    component: str | None = None

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        name = self.__class__.__name__
        logger = structlog.get_logger(name).bind(component=self.component or name)
        return cast("structlog.stdlib.BoundLogger", logger)
