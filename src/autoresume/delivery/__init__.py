from .base import DeliveryContext, DeliveryTier
from .keystroke import KeystrokeTier
from .pty import PtyTier
from .tiered import default_tiers, deliver_resume
from .tmux import TmuxTier

__all__ = [
    "DeliveryContext",
    "DeliveryTier",
    "KeystrokeTier",
    "PtyTier",
    "TmuxTier",
    "default_tiers",
    "deliver_resume",
]
