"""
SAML Single Logout value types and HTTP-POST delivery.

Message encoding, signing and validation are done by python3-saml in
``saml_service``; this module holds what the routes need to act on the
result.
"""

import html
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class LogoutRequestInfo:
    """Fields of a verified IdP LogoutRequest that drive the local logout."""

    id: str
    issuer: Optional[str] = None
    name_id: Optional[str] = None
    session_indexes: List[str] = field(default_factory=list)


@dataclass
class LogoutReply:
    """
    A LogoutResponse on its way back to the IdP.

    ``redirect_url`` is set for the HTTP-Redirect binding; otherwise the
    encoded response is POSTed to ``destination``.
    """

    destination: str
    saml_response: str
    relay_state: Optional[str] = None
    redirect_url: Optional[str] = None


def render_post_form(
    slo_url: str,
    saml_response: str,
    relay_state: Optional[str] = None,
) -> str:
    """Auto-submitting HTML form that POSTs a SAMLResponse to the IdP."""
    relay_input = ""
    if relay_state:
        relay_input = (
            f'<input type="hidden" name="RelayState" value="{html.escape(relay_state)}"/>'
        )

    return (
        "<!DOCTYPE html>"
        "<html><head><meta charset=\"utf-8\"><title>Signing out</title></head>"
        '<body onload="document.forms[0].submit()">'
        f'<form method="post" action="{html.escape(slo_url)}">'
        f'<input type="hidden" name="SAMLResponse" value="{html.escape(saml_response)}"/>'
        f"{relay_input}"
        "<noscript><button type=\"submit\">Continue</button></noscript>"
        "</form></body></html>"
    )
