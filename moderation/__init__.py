from .bot import ModerationBot
