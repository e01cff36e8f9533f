from relay.channels.telegram.binding import TelegramBinding

__all__ = ["TelegramBinding"]
