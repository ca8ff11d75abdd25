from __future__ import annotations


class InsufficientCredits(Exception):
    """Balance does not cover the requested debit; a business rejection, never retried."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.required == 1:
            return (
                f"Insufficient credits. You have {self.available} credits, "
                "but 1 credit is required to send a message."
            )
        return (
            f"Insufficient credits. You have {self.available} credits, "
            f"but {self.required} credits are required to send {self.required} messages."
        )


class ClientNotFound(Exception):
    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__("Client not found")
