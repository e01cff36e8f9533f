from relay.channels.email.binding import EmailBinding, EmailThread, channel_id_for

__all__ = ["EmailBinding", "EmailThread", "channel_id_for"]
