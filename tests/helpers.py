import re
from dataclasses import dataclass

from booking_auth.auth.email import EmailSender

STRONG_PASSWORD = "Str0ng!Pass9"


@dataclass
class SentEmail:
    to: str
    subject: str
    body: str

    @property
    def token(self) -> str | None:
        match = re.search(r"token=(\S+)", self.body)
        return match.group(1) if match else None


class RecordingEmailSender(EmailSender):
    def __init__(self):
        super().__init__()
        self.sent: list[SentEmail] = []

    async def send(self, to_email, subject, text_body):
        self.sent.append(SentEmail(to_email, subject, text_body))
        return True


def register(client, email="alice@example.com", password=STRONG_PASSWORD, full_name="Alice Example", **kwargs):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "fullName": full_name, "password": password},
        **kwargs,
    )


def login(client, email="alice@example.com", password=STRONG_PASSWORD, **kwargs):
    return client.post("/v1/auth/login", json={"email": email, "password": password}, **kwargs)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
