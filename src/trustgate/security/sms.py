"""
SMS transport collaborator

The credential engine never talks to a carrier itself; it hands the code to an
``SMSSender`` supplied by the host.
"""

from abc import ABC, abstractmethod

from trustgate.core.logging import LoggerMixin


class SMSSender(ABC):
    """Delivers a one-time code to a phone number"""

    @abstractmethod
    def send(self, phone_number: str, code: str) -> None:
        """Deliver ``code``; raise on failure"""


class LoggingSMSSender(SMSSender, LoggerMixin):
    """Development sender that only records that a code went out"""

    def send(self, phone_number: str, code: str) -> None:
        self.logger.info(f"SMS verification code issued to ***{phone_number[-4:]}")
