from typing import Iterable, List
import logging

import requests

from pos_terminal.utils.texts import variance_alert_text

logger = logging.getLogger(__name__)


class WhatsAppAlertSender:
    """Доставка оповещений администраторам через Green API (sendMessage)."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        id_instance: str,
        phones: Iterable[str],
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.id_instance = id_instance
        self.phones: List[str] = [self._chat_id(phone) for phone in phones]
        self.timeout = timeout

    def send_text(self, message: str) -> list[dict]:
        """
        Отправляет текст всем администраторам.
        :param message: текст сообщения
        :return: ответы API по каждому номеру
        """
        url = (
            f"{self.base_url}"
            f"/waInstance{self.id_instance}"
            f"/sendMessage"
            f"/{self.api_token}"
        )
        responses = []
        for chat_id in self.phones:
            try:
                resp = requests.post(
                    url=url,
                    headers={"Content-Type": "application/json"},
                    json={"chatId": chat_id, "message": message},
                    timeout=self.timeout,
                )
                logger.debug("WA alert response: %s %s", resp.status_code, resp.text)
                resp.raise_for_status()
                responses.append(resp.json())
            except requests.RequestException:
                # оповещение не должно ломать закрытие смены или синхронизацию
                logger.exception("failed to deliver alert to %s", chat_id)
        return responses

    def send_variance_alert(self, alert) -> list[dict]:
        return self.send_text(variance_alert_text(alert))

    @staticmethod
    def _chat_id(phone: str) -> str:
        """
        Преобразует номер в chatId:
        "2348012345678" → "2348012345678@c.us"
        """
        phone = phone.strip()
        if phone.lower().endswith("@c.us"):
            return phone
        digits = "".join(ch for ch in phone if ch.isdigit())
        return f"{digits}@c.us"


class LoggingAlertSender:
    """Заглушка доставки, когда Green API не настроен: пишет оповещения в лог."""

    def send_text(self, message: str) -> list[dict]:
        logger.warning("alert: %s", message)
        return []

    def send_variance_alert(self, alert) -> list[dict]:
        return self.send_text(variance_alert_text(alert))
