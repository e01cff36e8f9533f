from relay.channels.web.binding import WebBinding

__all__ = ["WebBinding"]
