from __future__ import annotations
from typing import Dict, List, Optional

from . import config
from .logs import get_logger

log = get_logger("notify")

SUBJECT = "Confirmación de Compra - MCShop"


def render_purchase_confirmation(
        commerce_order: str, products: List[Dict[str, Optional[str]]]
) -> str:
    lines = [
        "¡Gracias por tu compra!",
        "",
        f"Tu pedido {commerce_order} ha sido procesado exitosamente.",
        "",
        "Productos comprados:",
    ]
    has_links = False
    for p in products:
        lines.append(f"  - {p['name']}")
        if p.get("download_url"):
            has_links = True
            lines.append(f"    Descargar: {p['download_url']}")
    if has_links:
        lines += [
            "",
            "Importante: cada enlace de descarga expira en 24 horas y "
            "solo puede usarse una vez.",
        ]
    lines += [
        "",
        f"También puedes acceder a tus descargas desde {config.APP_URL}"
        "/dashboard",
    ]
    return "\n".join(lines)


def send_purchase_confirmation(
        email: str, commerce_order: str,
        products: List[Dict[str, Optional[str]]]
) -> Dict[str, str]:
    # No mail transport is wired up; the message is rendered and logged.
    message = {
        "to": email,
        "subject": SUBJECT,
        "body": render_purchase_confirmation(commerce_order, products),
    }
    log.info("purchase confirmation queued", to=email,
             commerce_order=commerce_order,
             has_download=any(p.get("download_url") for p in products))
    return message
