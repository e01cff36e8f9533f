from relay.channels.slack.binding import SlackBinding, compute_signature

__all__ = ["SlackBinding", "compute_signature"]
