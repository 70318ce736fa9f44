"""
SAML 2.0 Service Provider Implementation.

This module provides:
- Service Provider (SP) metadata generation (python3-saml)
- AuthnRequest redirect URLs (python3-saml)
- Response validation and profile extraction (python3-saml)
- Single Logout: verified IdP LogoutRequests, LogoutResponses in both
  bindings, and SP-initiated LogoutRequest URLs
- Configuration testing (entry point, issuer, IdP certificate)

Security Considerations:
- Strict mode is always on: signatures, audience, destination and time
  conditions are checked by python3-saml against the stored IdP certificate
- Assertions must be signed
- IdP LogoutRequests must be signed and issued by the configured IdP
- Signature failures and missing NameIDs raise distinct errors
- SAML payloads are never logged

Dependencies:
- python3-saml: pip install python3-saml
- cryptography: certificate inspection
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.auth.sso.helpers import (
    is_valid_http_url,
    saml_acs_url,
    saml_entity_id,
    saml_logout_url,
)
from src.auth.sso.saml_logout import LogoutReply, LogoutRequestInfo
from src.config import SSOSettings, get_settings
from src.types.sso import (
    SAMLBindingType,
    SAMLNameIDFormat,
    SAMLSSOConfig,
    SSOProtocol,
    SSOTestResult,
    SSOUserProfile,
)

logger = logging.getLogger(__name__)

CLAIMS_NS = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims"
EMAIL_ATTRIBUTES = [f"{CLAIMS_NS}/emailaddress", "email", "mail"]
GIVEN_NAME_ATTRIBUTES = [f"{CLAIMS_NS}/givenname", "firstName", "givenName"]
SURNAME_ATTRIBUTES = [f"{CLAIMS_NS}/surname", "lastName", "sn"]
DISPLAY_NAME_ATTRIBUTES = [f"{CLAIMS_NS}/name", "displayName"]
GROUP_ATTRIBUTES = [
    "http://schemas.xmlsoap.org/claims/Group",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups",
    "groups",
]

SIGNATURE_ALGORITHM = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
DIGEST_ALGORITHM = "http://www.w3.org/2001/04/xmlenc#sha256"

LOGOUT_REQUEST_SIGNATURE_XPATH = "/samlp:LogoutRequest/ds:Signature"
LOGOUT_RESPONSE_SIGNATURE_XPATH = "/samlp:LogoutResponse/ds:Signature"

# python3-saml settings error codes and the configuration field they blame
SETTINGS_ERROR_FIELDS = {
    "idp_entityId_not_found": "idp_entity_id",
    "idp_sso_not_found": "entry_point",
    "idp_sso_url_invalid": "entry_point",
    "idp_slo_url_invalid": "slo_url",
    "idp_cert_or_fingerprint_not_found_and_required": "certificate",
    "idp_cert_not_found_and_required": "certificate",
    "sp_entityId_not_found": "issuer",
    "sp_acs_not_found": "callback_url",
    "sp_acs_url_invalid": "callback_url",
    "sp_sls_url_invalid": "callback_url",
}


# =============================================================================
# Exceptions
# =============================================================================


class SAMLServiceError(Exception):
    """SAML Service specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "SAML_ERROR"
        self.details = details or {}


class SAMLSignatureError(SAMLServiceError):
    """The response or assertion signature did not verify."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SAML_SIGNATURE_INVALID", details)


class SAMLMissingNameIDError(SAMLServiceError):
    """The assertion carries no usable NameID."""

    def __init__(self, message: str = "SAML assertion has no usable NameID"):
        super().__init__(message, "SAML_MISSING_NAMEID")


def settings_error_codes(error: Exception) -> List[str]:
    """Codes listed in a python3-saml ``Invalid dict settings`` error."""
    _, _, listed = str(error).partition(": ")
    return [code.strip() for code in listed.split(",") if code.strip()]


def _signature_error_codes() -> frozenset:
    from onelogin.saml2.errors import OneLogin_Saml2_ValidationError as ValidationError

    return frozenset(
        {
            ValidationError.WRONG_SIGNED_ELEMENT,
            ValidationError.ID_NOT_FOUND_IN_SIGNED_ELEMENT,
            ValidationError.DUPLICATED_ID_IN_SIGNED_ELEMENTS,
            ValidationError.INVALID_SIGNED_ELEMENT,
            ValidationError.DUPLICATED_REFERENCE_IN_SIGNED_ELEMENTS,
            ValidationError.UNEXPECTED_SIGNED_ELEMENTS,
            ValidationError.WRONG_NUMBER_OF_SIGNATURES_IN_RESPONSE,
            ValidationError.WRONG_NUMBER_OF_SIGNATURES_IN_ASSERTION,
            ValidationError.NO_SIGNED_MESSAGE,
            ValidationError.NO_SIGNED_ASSERTION,
            ValidationError.NO_SIGNATURE_FOUND,
            ValidationError.INVALID_SIGNATURE,
            ValidationError.WRONG_NUMBER_OF_SIGNATURES,
            ValidationError.DEPRECATED_SIGNATURE_METHOD,
            ValidationError.DEPRECATED_DIGEST_METHOD,
        }
    )


def classify_validation_error(error: Exception, message_type: str) -> SAMLServiceError:
    """Map a python3-saml validation error onto the service's error types."""
    from onelogin.saml2.errors import OneLogin_Saml2_ValidationError as ValidationError

    code = getattr(error, "code", None)
    details = {"reason": str(error), "code": code}
    if code in _signature_error_codes():
        return SAMLSignatureError(f"SAML {message_type} signature validation failed", details)
    if code in (ValidationError.NO_NAMEID, ValidationError.EMPTY_NAMEID):
        return SAMLMissingNameIDError()
    return SAMLServiceError(
        f"SAML {message_type} validation failed", "SAML_VALIDATION_ERROR", details
    )


# =============================================================================
# Profile Mapping
# =============================================================================


def _strip_pem_headers(cert: str) -> str:
    """Remove PEM headers and footers, return the raw Base64 body."""
    lines = cert.strip().splitlines()
    return "".join(line.strip() for line in lines if not line.startswith("-----"))


def _first(attributes: Dict[str, List[str]], names: List[str]) -> Optional[str]:
    for name in names:
        values = attributes.get(name) or []
        for value in values:
            if value and value.strip():
                return value.strip()
    return None


def map_attributes_to_profile(
    name_id: Optional[str],
    attributes: Dict[str, List[str]],
    session_index: Optional[str] = None,
) -> SSOUserProfile:
    """
    Build a user profile from a validated assertion.

    NameID is treated as the email address; the email claims are used
    only when NameID is not an address.

    Raises:
        SAMLMissingNameIDError: No NameID, or no email could be derived
    """
    name_id = (name_id or "").strip()
    if not name_id:
        raise SAMLMissingNameIDError()

    email = name_id if "@" in name_id else _first(attributes, EMAIL_ATTRIBUTES)
    if not email or "@" not in email:
        raise SAMLMissingNameIDError("SAML NameID is not an email address")

    first_name = _first(attributes, GIVEN_NAME_ATTRIBUTES)
    last_name = _first(attributes, SURNAME_ATTRIBUTES)
    display_name = _first(attributes, DISPLAY_NAME_ATTRIBUTES)
    if not display_name and (first_name or last_name):
        display_name = " ".join(p for p in (first_name, last_name) if p)

    groups: List[str] = []
    for attr in GROUP_ATTRIBUTES:
        for value in attributes.get(attr) or []:
            if value and value not in groups:
                groups.append(value)

    return SSOUserProfile(
        id=name_id,
        email=email.lower(),
        first_name=first_name,
        last_name=last_name,
        display_name=display_name,
        groups=groups,
        raw_attributes={k: list(v) for k, v in attributes.items()},
        protocol=SSOProtocol.SAML,
        session_index=session_index,
    )


# =============================================================================
# Service
# =============================================================================


class SAMLService:
    """
    SAML 2.0 SP for one organization.

    ``request_data`` arguments are python3-saml request dictionaries
    (https, http_host, server_port, script_name, get_data, post_data).
    """

    def __init__(
        self,
        config: SAMLSSOConfig,
        organization_slug: str,
        app_url: Optional[str] = None,
        sso_settings: Optional[SSOSettings] = None,
    ):
        settings = get_settings()
        self.config = config
        self.organization_slug = organization_slug
        self.app_url = (app_url or settings.app.app_url).rstrip("/")
        self.sso_settings = sso_settings or settings.sso

    @property
    def entity_id(self) -> str:
        return self.config.issuer or saml_entity_id(self.app_url, self.organization_slug)

    @property
    def acs_url(self) -> str:
        return self.config.callback_url or saml_acs_url(self.app_url, self.organization_slug)

    @property
    def logout_url(self) -> str:
        return saml_logout_url(self.app_url, self.organization_slug)

    def build_saml_settings(self) -> Dict[str, Any]:
        """
        Build settings dictionary for python3-saml.

        Returns:
            Settings dictionary compatible with OneLogin_Saml2_Settings
        """
        sp_cert = ""
        sp_key = ""
        sign_requests = self.sso_settings.has_sp_signing_key
        if sign_requests:
            sp_cert = _strip_pem_headers(self.sso_settings.saml_sp_cert)
            sp_key = self.sso_settings.saml_sp_private_key.get_secret_value()

        settings: Dict[str, Any] = {
            "strict": True,
            "debug": False,
            "sp": {
                "entityId": self.entity_id,
                "assertionConsumerService": {
                    "url": self.acs_url,
                    "binding": SAMLBindingType.HTTP_POST.value,
                },
                "singleLogoutService": {
                    "url": self.logout_url,
                    "binding": SAMLBindingType.HTTP_REDIRECT.value,
                },
                "NameIDFormat": SAMLNameIDFormat.EMAIL.value,
                "x509cert": sp_cert,
                "privateKey": sp_key,
            },
            "idp": {
                "entityId": self.config.idp_entity_id,
                "singleSignOnService": {
                    "url": self.config.entry_point,
                    "binding": SAMLBindingType.HTTP_REDIRECT.value,
                },
                "x509cert": _strip_pem_headers(self.config.certificate or ""),
            },
            "security": {
                "nameIdEncrypted": False,
                "authnRequestsSigned": sign_requests,
                "logoutRequestSigned": sign_requests,
                "logoutResponseSigned": sign_requests,
                "wantMessagesSigned": False,
                "wantAssertionsSigned": True,
                "wantNameId": True,
                "wantAttributeStatement": False,
                "signatureAlgorithm": SIGNATURE_ALGORITHM,
                "digestAlgorithm": DIGEST_ALGORITHM,
                "rejectUnsolicitedResponsesWithInResponseTo": True,
            },
        }

        if self.config.slo_url:
            settings["idp"]["singleLogoutService"] = {
                "url": self.config.slo_url,
                "binding": SAMLBindingType.HTTP_REDIRECT.value,
            }

        return settings

    def load_settings(
        self,
        sp_validation_only: bool = False,
        want_messages_signed: bool = False,
    ):
        """
        Load the settings into python3-saml.

        Raises:
            SAMLServiceError: SAML_CONFIG_INVALID, listing python3-saml's
                error codes under ``details["errors"]``
        """
        from onelogin.saml2.errors import OneLogin_Saml2_Error
        from onelogin.saml2.settings import OneLogin_Saml2_Settings

        data = self.build_saml_settings()
        data["security"]["wantMessagesSigned"] = want_messages_signed
        try:
            return OneLogin_Saml2_Settings(data, sp_validation_only=sp_validation_only)
        except OneLogin_Saml2_Error as e:
            errors = settings_error_codes(e)
            logger.warning(
                f"Invalid SAML settings for org {self.organization_slug}: {', '.join(errors)}"
            )
            raise SAMLServiceError(
                "SAML configuration is invalid",
                "SAML_CONFIG_INVALID",
                details={"errors": errors},
            )

    def _init_auth(self, request_data: Dict[str, Any], settings=None):
        from onelogin.saml2.auth import OneLogin_Saml2_Auth

        return OneLogin_Saml2_Auth(request_data, settings or self.load_settings())

    def generate_metadata(self) -> str:
        """
        SP metadata XML built by python3-saml.

        Raises:
            SAMLServiceError: Invalid SP settings or metadata
        """
        settings = self.load_settings(sp_validation_only=True)
        metadata = settings.get_sp_metadata()
        errors = settings.validate_metadata(metadata)
        if errors:
            logger.error(
                f"Generated SP metadata for org {self.organization_slug} is invalid: {errors}"
            )
            raise SAMLServiceError(
                "SP metadata is invalid", "SAML_METADATA_INVALID", details={"errors": errors}
            )
        return metadata

    def build_authn_request_url(
        self,
        request_data: Dict[str, Any],
        relay_state: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Create an AuthnRequest redirect to the IdP.

        Returns:
            Tuple of (redirect URL, AuthnRequest ID)

        Raises:
            SAMLServiceError: The stored configuration is not loadable
        """
        auth = self._init_auth(request_data)
        redirect_url = auth.login(return_to=relay_state)
        request_id = auth.get_last_request_id()

        logger.info(f"SAML AuthnRequest created for org {self.organization_slug}")
        return redirect_url, request_id

    def validate_response(
        self,
        request_data: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> SSOUserProfile:
        """
        Validate a posted SAMLResponse and extract the user profile.

        Args:
            request_data: python3-saml request dict with ``post_data``
                containing ``SAMLResponse``
            request_id: ID of the AuthnRequest this response answers
                (None for IdP-initiated login)

        Raises:
            SAMLSignatureError: Signature or certificate validation failed
            SAMLMissingNameIDError: No usable NameID
            SAMLServiceError: Any other validation failure
        """
        from onelogin.saml2.errors import OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError
        from onelogin.saml2.response import OneLogin_Saml2_Response

        encoded = (request_data.get("post_data") or {}).get("SAMLResponse")
        if not encoded:
            raise SAMLServiceError("Missing SAMLResponse", "SAML_MISSING_RESPONSE")

        settings = self.load_settings()
        try:
            response = OneLogin_Saml2_Response(settings, encoded)
            response.is_valid(request_data, request_id, raise_exceptions=True)
            name_id = response.get_nameid()
            attributes = response.get_attributes() or {}
            session_index = response.get_session_index()
        except OneLogin_Saml2_ValidationError as e:
            error = classify_validation_error(e, "response")
            logger.warning(
                f"SAML response rejected for org {self.organization_slug}: {error.error_code}"
            )
            raise error
        except OneLogin_Saml2_Error as e:
            logger.warning(f"SAML response rejected for org {self.organization_slug}: {e}")
            raise SAMLServiceError(
                "SAML response validation failed",
                "SAML_VALIDATION_ERROR",
                details={"reason": str(e)},
            )
        except (ValueError, SyntaxError) as e:
            logger.warning(
                f"Unreadable SAML response for org {self.organization_slug}: {type(e).__name__}"
            )
            raise SAMLServiceError("SAML response could not be parsed", "SAML_PARSE_ERROR")

        profile = map_attributes_to_profile(
            name_id=name_id,
            attributes=attributes,
            session_index=session_index,
        )
        logger.info(f"SAML response accepted for org {self.organization_slug}")
        return profile

    # -------------------------------------------------------------------------
    # Single Logout
    # -------------------------------------------------------------------------

    def build_logout_request_url(
        self,
        request_data: Dict[str, Any],
        name_id: Optional[str],
        session_index: Optional[str] = None,
        relay_state: Optional[str] = None,
    ) -> Optional[str]:
        """
        SP-initiated logout redirect, or None when the IdP has no SLO URL.
        """
        if not self.config.slo_url:
            return None

        auth = self._init_auth(request_data)
        return auth.logout(
            return_to=relay_state,
            name_id=name_id,
            session_index=session_index,
            name_id_format=SAMLNameIDFormat.EMAIL.value,
        )

    def process_logout_request(
        self,
        request_data: Dict[str, Any],
        post_binding: bool = False,
    ) -> LogoutRequestInfo:
        """
        Verify an IdP-initiated LogoutRequest.

        HTTP-Redirect requests must carry a query-string signature and
        HTTP-POST requests an enveloped XML signature, made with the IdP
        certificate. The Issuer must be the configured IdP entity ID.

        Raises:
            SAMLSignatureError: Missing or invalid signature
            SAMLServiceError: Undecodable, schema-invalid, expired, sent to
                another destination or issued by another entity
        """
        from onelogin.saml2.errors import OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError
        from onelogin.saml2.logout_request import OneLogin_Saml2_Logout_Request
        from onelogin.saml2.utils import OneLogin_Saml2_Utils

        params = request_data["post_data"] if post_binding else request_data["get_data"]
        settings = self.load_settings(want_messages_signed=not post_binding)

        try:
            logout_request = OneLogin_Saml2_Logout_Request(settings, params.get("SAMLRequest", ""))
            xml = logout_request.get_xml()

            if post_binding:
                OneLogin_Saml2_Utils.validate_sign(
                    xml,
                    settings.get_idp_cert(),
                    xpath=LOGOUT_REQUEST_SIGNATURE_XPATH,
                    raise_exceptions=True,
                )
            else:
                auth = self._init_auth(request_data, settings)
                if not auth.validate_request_signature(params):
                    raise SAMLSignatureError(
                        "SAML LogoutRequest signature validation failed",
                        details={"reason": auth.get_last_error_reason()},
                    )

            logout_request.is_valid(request_data, raise_exceptions=True)

            issuer = OneLogin_Saml2_Logout_Request.get_issuer(xml)
            if issuer != self.config.idp_entity_id:
                raise SAMLServiceError(
                    "SAML LogoutRequest was not issued by the configured IdP",
                    "SAML_WRONG_ISSUER",
                )

            info = LogoutRequestInfo(
                id=logout_request.id,
                issuer=issuer,
                name_id=OneLogin_Saml2_Logout_Request.get_nameid(xml),
                session_indexes=OneLogin_Saml2_Logout_Request.get_session_indexes(xml),
            )
        except OneLogin_Saml2_ValidationError as e:
            raise classify_validation_error(e, "LogoutRequest")
        except OneLogin_Saml2_Error as e:
            raise SAMLServiceError(
                "SAML LogoutRequest validation failed",
                "SAML_VALIDATION_ERROR",
                details={"reason": str(e)},
            )
        except (ValueError, SyntaxError) as e:
            raise SAMLServiceError(
                f"SAML LogoutRequest could not be parsed: {type(e).__name__}",
                "SAML_PARSE_ERROR",
            )

        return info

    def build_logout_response(
        self,
        request_data: Dict[str, Any],
        in_response_to: str,
        post_binding: bool = False,
        relay_state: Optional[str] = None,
    ) -> Optional[LogoutReply]:
        """
        LogoutResponse answering ``in_response_to`` over the request's binding.

        Returns None when the IdP has no SLO URL to answer to.
        """
        from onelogin.saml2.logout_response import OneLogin_Saml2_Logout_Response
        from onelogin.saml2.utils import OneLogin_Saml2_Utils

        if not self.config.slo_url:
            return None

        settings = self.load_settings()
        security = settings.get_security_data()
        builder = OneLogin_Saml2_Logout_Response(settings)
        builder.build(in_response_to)
        destination = settings.get_idp_slo_response_url()

        if post_binding:
            xml = builder.get_xml()
            if security["logoutResponseSigned"]:
                xml = OneLogin_Saml2_Utils.add_sign(
                    xml,
                    settings.get_sp_key(),
                    settings.get_sp_cert(),
                    sign_algorithm=security["signatureAlgorithm"],
                    digest_algorithm=security["digestAlgorithm"],
                )
            return LogoutReply(
                destination=destination,
                saml_response=OneLogin_Saml2_Utils.b64encode(xml),
                relay_state=relay_state,
            )

        parameters = {"SAMLResponse": builder.get_response()}
        if relay_state:
            parameters["RelayState"] = relay_state
        if security["logoutResponseSigned"]:
            self._init_auth(request_data, settings).add_response_signature(
                parameters, security["signatureAlgorithm"]
            )
        return LogoutReply(
            destination=destination,
            saml_response=parameters["SAMLResponse"],
            relay_state=relay_state,
            redirect_url=OneLogin_Saml2_Utils.redirect(
                destination, parameters, request_data=request_data
            ),
        )

    def process_logout_response(
        self,
        request_data: Dict[str, Any],
        post_binding: bool = False,
    ) -> Optional[str]:
        """
        Validate the IdP's answer to our LogoutRequest.

        Signatures are checked when present. Returns the InResponseTo.

        Raises:
            SAMLSignatureError: Invalid signature
            SAMLServiceError: Invalid message or a non-success status
        """
        from onelogin.saml2.constants import OneLogin_Saml2_Constants
        from onelogin.saml2.errors import OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError
        from onelogin.saml2.logout_response import OneLogin_Saml2_Logout_Response
        from onelogin.saml2.utils import OneLogin_Saml2_Utils
        from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

        params = request_data["post_data"] if post_binding else request_data["get_data"]
        settings = self.load_settings()

        try:
            logout_response = OneLogin_Saml2_Logout_Response(
                settings, params.get("SAMLResponse", "")
            )
            xml = logout_response.get_xml()

            if post_binding:
                if OneLogin_Saml2_XML.query(logout_response.document, LOGOUT_RESPONSE_SIGNATURE_XPATH):
                    OneLogin_Saml2_Utils.validate_sign(
                        xml,
                        settings.get_idp_cert(),
                        xpath=LOGOUT_RESPONSE_SIGNATURE_XPATH,
                        raise_exceptions=True,
                    )
            else:
                auth = self._init_auth(request_data, settings)
                if not auth.validate_response_signature(params):
                    raise SAMLSignatureError(
                        "SAML LogoutResponse signature validation failed",
                        details={"reason": auth.get_last_error_reason()},
                    )

            logout_response.is_valid(request_data, raise_exceptions=True)
            status = logout_response.get_status()
            in_response_to = logout_response.get_in_response_to()
        except OneLogin_Saml2_ValidationError as e:
            raise classify_validation_error(e, "LogoutResponse")
        except OneLogin_Saml2_Error as e:
            raise SAMLServiceError(
                "SAML LogoutResponse validation failed",
                "SAML_VALIDATION_ERROR",
                details={"reason": str(e)},
            )
        except (ValueError, SyntaxError) as e:
            raise SAMLServiceError(
                f"SAML LogoutResponse could not be parsed: {type(e).__name__}",
                "SAML_PARSE_ERROR",
            )

        if status != OneLogin_Saml2_Constants.STATUS_SUCCESS:
            raise SAMLServiceError(
                "IdP reported an unsuccessful logout",
                "SAML_LOGOUT_FAILED",
                details={"status": status},
            )
        return in_response_to

    # -------------------------------------------------------------------------
    # Configuration testing
    # -------------------------------------------------------------------------

    @staticmethod
    def extract_certificate_info(cert_pem: str) -> Dict[str, Any]:
        """
        Extract information from an X.509 certificate.

        Accepts PEM with or without headers.

        Raises:
            ValueError: If the certificate cannot be parsed
        """
        from cryptography import x509
        from cryptography.hazmat.primitives import hashes

        body = _strip_pem_headers(cert_pem)
        pem = "-----BEGIN CERTIFICATE-----\n"
        pem += "\n".join(body[i:i + 64] for i in range(0, len(body), 64))
        pem += "\n-----END CERTIFICATE-----\n"
        cert = x509.load_pem_x509_certificate(pem.encode())

        fingerprint_hex = cert.fingerprint(hashes.SHA256()).hex().upper()
        now = datetime.now(timezone.utc)
        return {
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "not_valid_after": cert.not_valid_after_utc.isoformat(),
            "fingerprint_sha256": ":".join(
                fingerprint_hex[i:i + 2] for i in range(0, len(fingerprint_hex), 2)
            ),
            "is_expired": now > cert.not_valid_after_utc,
            "days_until_expiry": (cert.not_valid_after_utc - now).days,
        }

    def test_configuration(self) -> SSOTestResult:
        """Check entry point, issuer and IdP certificate without contacting the IdP."""
        if not is_valid_http_url(self.config.entry_point):
            return SSOTestResult(
                success=False,
                message="Invalid SAML entry point URL",
                details={"entry_point": self.config.entry_point},
            )
        if not self.config.issuer:
            return SSOTestResult(success=False, message="SAML issuer is required")
        if not self.config.idp_entity_id:
            return SSOTestResult(success=False, message="IdP entity ID is required")
        if not self.config.certificate or not self.config.certificate.strip():
            return SSOTestResult(success=False, message="IdP certificate is required")

        try:
            self.load_settings()
        except SAMLServiceError as e:
            return SSOTestResult(
                success=False,
                message="SAML settings were rejected",
                details=e.details,
            )

        try:
            cert_info = self.extract_certificate_info(self.config.certificate)
        except ValueError as e:
            return SSOTestResult(
                success=False,
                message="IdP certificate could not be parsed",
                details={"error": str(e)},
            )

        if cert_info["is_expired"]:
            return SSOTestResult(
                success=False,
                message=f"IdP certificate expired on {cert_info['not_valid_after']}",
                details={"certificate": cert_info},
            )

        details: Dict[str, Any] = {
            "entity_id": self.entity_id,
            "acs_url": self.acs_url,
            "certificate": cert_info,
        }
        if cert_info["days_until_expiry"] < 30:
            details["warning"] = (
                f"IdP certificate expires in {cert_info['days_until_expiry']} days"
            )
        return SSOTestResult(
            success=True,
            message="SAML configuration is valid",
            details=details,
        )
