import logging
from typing import Any

logger = logging.getLogger("uvicorn.error")


class WebRTCSignaling:
    """
    Hook points for peer-to-peer session negotiation.

    None of these relay anything: they log the call and return None. A real
    implementation needs a peer registry and a signaling transport, neither of
    which exists here.
    """

    def __init__(self):
        logger.info("[WebRTC Relay] Signaling hooks registered (no-op)")

    def handle_ice_candidate(self, peer_id: str, candidate: Any) -> None:
        logger.debug(f"[WebRTC Relay] ICE candidate for peer {peer_id} ignored")
        return None

    def handle_offer(self, peer_id: str, offer: str) -> None:
        logger.debug(f"[WebRTC Relay] Offer from peer {peer_id} ignored")
        return None

    def handle_answer(self, peer_id: str, answer: str) -> None:
        logger.debug(f"[WebRTC Relay] Answer from peer {peer_id} ignored")
        return None
