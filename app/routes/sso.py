"""
SSO (Single Sign-On) API Endpoints.

This module provides REST endpoints for SSO authentication:
- SAML 2.0: SP metadata, login, ACS callback, single logout
- OIDC: login, callback, RP-initiated and back-channel logout
- Current session and logout

Security Considerations:
- SAML responses are validated against the stored IdP certificate
- OIDC state and nonce are single-use and stored server-side
- Back-channel logout tokens are verified and rejected on replay
- Post-login redirects are restricted to this application
- Callback failures redirect to the login page with an error code only
"""

import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from app.dependencies import (
    clear_session_cookies,
    get_backchannel_handler,
    get_client_ip,
    get_mfa_service,
    get_optional_session,
    get_session_manager,
    get_session_token,
    get_sso_config_service,
    get_state_store,
    get_store,
    set_session_cookie,
)
from app.exceptions import AuthorizationError, ErrorCode, ResourceNotFoundError
from src.auth.sessions import SessionManager, UserSession
from src.auth.sso.backchannel import BackChannelLogoutHandler, LogoutTokenError
from src.auth.sso.config_service import SSOConfigService
from src.auth.sso.helpers import sanitize_redirect_url
from src.auth.sso.login import SSOLoginError, SSOLoginResult, complete_sso_login
from src.auth.sso.oidc_service import OIDCServiceError
from src.auth.sso.saml_logout import render_post_form
from src.auth.sso.saml_service import SAMLServiceError
from src.auth.sso.state_store import PendingLogin, SSOStateStore, generate_state_token
from src.config import get_settings
from src.mfa.service import MFAService
from src.security.policies import SecurityPolicyViolation
from src.storage.directory import DirectoryStore
from src.types.directory import Organization
from src.types.sso import OIDCSSOConfig, SAMLSSOConfig, SSOConfigBase, SSOProtocol

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sso", tags=["sso"])

LOGIN_PAGE = "/login"
LOGOUT_PAGE = "/logout"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _app_url() -> str:
    return get_settings().app.app_url.rstrip("/")


def _get_request_info(
    request: Request,
    post_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Extract request information for python3-saml."""
    # Determine if HTTPS
    https = request.url.scheme == "https"
    if request.headers.get("x-forwarded-proto") == "https":
        https = True

    # Get host
    host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))

    # Get port
    port = 443 if https else 80
    if ":" in host:
        host, port_str = host.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            pass

    return {
        "https": "on" if https else "off",
        "http_host": host,
        "server_port": port,
        "script_name": str(request.url.path),
        "get_data": dict(request.query_params),
        "post_data": post_data or {},
    }


async def _resolve_organization(store: DirectoryStore, slug: str) -> Organization:
    organization = await store.get_organization_by_slug(slug)
    if organization is None:
        raise ResourceNotFoundError(
            resource_type="Organization",
            error_code=ErrorCode.ORGANIZATION_NOT_FOUND,
        )
    return organization


async def _resolve_sso(
    store: DirectoryStore,
    config_service: SSOConfigService,
    slug: str,
    protocol: SSOProtocol,
) -> Tuple[Organization, SSOConfigBase]:
    """Organization by slug and its active configuration for one protocol."""
    organization = await _resolve_organization(store, slug)
    config = await config_service.get_active(organization.id)
    if config is None or config.protocol != protocol.value:
        raise ResourceNotFoundError(
            f"{protocol.value.upper()} SSO is not configured for this organization",
            resource_type="SSO configuration",
            error_code=ErrorCode.SSO_NOT_CONFIGURED,
        )
    return organization, config


def _require_enabled(organization: Organization, config: SSOConfigBase) -> None:
    if not config.enabled:
        logger.info(f"SSO login attempted for org {organization.id} with SSO disabled")
        raise AuthorizationError("SSO is not enabled for this organization")


def _login_error_redirect(error_code: str) -> RedirectResponse:
    """Send the browser back to the login page with a machine-readable reason."""
    query = urlencode({"error": error_code.lower()})
    return RedirectResponse(url=f"{LOGIN_PAGE}?{query}", status_code=status.HTTP_302_FOUND)


def _login_redirect(result: SSOLoginResult, redirect_to: str) -> RedirectResponse:
    """Redirect after a successful login, through the MFA step when one is due."""
    target = sanitize_redirect_url(redirect_to, _app_url())
    if result.mfa_step:
        target = f"{result.mfa_step}?{urlencode({'redirect': target})}"

    response = RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)
    set_session_cookie(response, result.token, result.max_age_seconds)
    return response


def _local_logout_redirect(url: str = LOGIN_PAGE) -> RedirectResponse:
    response = RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)
    clear_session_cookies(response)
    return response


# =============================================================================
# SAML Endpoints
# =============================================================================


@router.get(
    "/saml/{organization_slug}/metadata",
    response_class=Response,
    summary="Get SAML SP Metadata",
    description="Generate and return Service Provider (SP) metadata XML for SAML configuration.",
)
async def get_saml_metadata(
    organization_slug: str,
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
) -> Response:
    """
    Get SAML Service Provider metadata XML.

    This endpoint returns the SP metadata that should be provided to the
    Identity Provider (IdP) during SAML configuration.
    """
    organization, config = await _resolve_sso(
        store, config_service, organization_slug, SSOProtocol.SAML
    )
    metadata = config_service.saml_service(organization, config).generate_metadata()

    return Response(
        content=metadata,
        media_type="application/xml",
        headers={
            "Content-Disposition": f'attachment; filename="sp-metadata-{organization.slug}.xml"'
        },
    )


@router.get(
    "/saml/{organization_slug}/login",
    summary="Initiate SAML Login",
    description="Start the SAML authentication flow by redirecting to the IdP.",
)
async def saml_login(
    organization_slug: str,
    request: Request,
    redirect: Optional[str] = Query(None, description="URL to return to after login"),
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    state_store: SSOStateStore = Depends(get_state_store),
) -> RedirectResponse:
    """
    Initiate SAML authentication.

    The RelayState sent to the IdP is a single-use state token pointing at
    the pending login.
    """
    organization, config = await _resolve_sso(
        store, config_service, organization_slug, SSOProtocol.SAML
    )
    _require_enabled(organization, config)

    state = generate_state_token()
    saml_service = config_service.saml_service(organization, config)
    try:
        redirect_url, request_id = saml_service.build_authn_request_url(
            _get_request_info(request), relay_state=state
        )
    except SAMLServiceError as e:
        logger.warning(f"SAML login unavailable for org {organization.id}: {e.error_code}")
        return _login_error_redirect(e.error_code)

    await state_store.save(
        state,
        PendingLogin(
            organization_id=organization.id,
            protocol=SSOProtocol.SAML,
            request_id=request_id,
            redirect_to=sanitize_redirect_url(redirect, _app_url()),
        ),
    )

    logger.info(f"SAML login initiated for org {organization.id}")
    return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)


@router.post(
    "/saml/{organization_slug}/callback",
    summary="SAML Assertion Consumer Service",
    description="Handle SAML Response from the Identity Provider.",
)
async def saml_callback(
    organization_slug: str,
    request: Request,
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    state_store: SSOStateStore = Depends(get_state_store),
    sessions: SessionManager = Depends(get_session_manager),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> RedirectResponse:
    """
    SAML Assertion Consumer Service (ACS).

    A RelayState that matches no pending login is treated as an
    IdP-initiated login whose RelayState is the post-login target.
    """
    organization, config = await _resolve_sso(
        store, config_service, organization_slug, SSOProtocol.SAML
    )

    form_data = await request.form()
    saml_response = form_data.get("SAMLResponse")
    relay_state = form_data.get("RelayState")

    pending = await state_store.consume(relay_state)
    if pending is not None and (
        pending.organization_id != organization.id or pending.protocol != SSOProtocol.SAML
    ):
        logger.warning(f"SAML callback for org {organization.id} carried foreign state")
        return _login_error_redirect("INVALID_STATE")

    request_id = pending.request_id if pending else None
    redirect_to = pending.redirect_to if pending else (relay_state or "/")

    try:
        profile = config_service.saml_service(organization, config).validate_response(
            _get_request_info(
                request,
                post_data={"SAMLResponse": saml_response or "", "RelayState": relay_state or ""},
            ),
            request_id=request_id,
        )
        result = await complete_sso_login(
            store,
            sessions,
            mfa_service,
            organization,
            config,
            profile,
            client_ip=get_client_ip(request),
        )
    except (SAMLServiceError, SSOLoginError, SecurityPolicyViolation) as e:
        logger.warning(f"SAML login failed for org {organization.id}: {e.error_code}")
        return _login_error_redirect(e.error_code)

    return _login_redirect(result, redirect_to)


@router.api_route(
    "/saml/{organization_slug}/logout",
    methods=["GET", "POST"],
    summary="SAML Single Logout",
    description="Handle SAML Single Logout (SLO) requests and responses.",
)
async def saml_logout(
    organization_slug: str,
    request: Request,
    redirect: Optional[str] = Query(None, description="URL to return to after logout"),
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    sessions: SessionManager = Depends(get_session_manager),
) -> Response:
    """
    SAML Single Logout (SLO).

    - ``SAMLRequest``: IdP-initiated logout. Once the request's signature
      and issuer verify, matching sessions are revoked and a LogoutResponse
      goes back to the IdP over the same binding. An unverified request
      only ends the calling browser's own session.
    - ``SAMLResponse``: the IdP answering our own LogoutRequest.
    - Neither: the browser starts an SP-initiated logout.

    Without a SAML configuration the logout is local only.
    """
    post_binding = request.method == "POST"
    if post_binding:
        params = {k: v for k, v in (await request.form()).items() if isinstance(v, str)}
        request_data = _get_request_info(request, post_data=params)
    else:
        params = dict(request.query_params)
        request_data = _get_request_info(request)
    relay_state = params.get("RelayState")

    organization = await _resolve_organization(store, organization_slug)
    config = await config_service.get_active(organization.id)
    current = await sessions.revoke(get_session_token(request))

    if not isinstance(config, SAMLSSOConfig):
        logger.info(f"SLO for org {organization.id} without SAML configuration, local logout")
        return _local_logout_redirect()

    saml_service = config_service.saml_service(organization, config)

    if "SAMLRequest" in params:
        try:
            logout_request = saml_service.process_logout_request(
                request_data, post_binding=post_binding
            )
        except SAMLServiceError as e:
            logger.warning(f"LogoutRequest rejected for org {organization.id}: {e.error_code}")
            return _local_logout_redirect(LOGOUT_PAGE)

        revoked = 0
        if logout_request.name_id:
            revoked = await sessions.revoke_by_subject(
                organization.id,
                logout_request.name_id,
                logout_request.session_indexes or None,
            )
        logger.info(f"IdP-initiated SAML logout for org {organization.id}: {revoked} sessions")

        try:
            reply = saml_service.build_logout_response(
                request_data,
                logout_request.id,
                post_binding=post_binding,
                relay_state=relay_state,
            )
        except SAMLServiceError as e:
            logger.error(f"LogoutResponse not built for org {organization.id}: {e.error_code}")
            reply = None
        if reply is None:
            return _local_logout_redirect(LOGOUT_PAGE)

        if reply.redirect_url:
            response: Response = RedirectResponse(
                url=reply.redirect_url, status_code=status.HTTP_302_FOUND
            )
        else:
            response = HTMLResponse(
                render_post_form(reply.destination, reply.saml_response, reply.relay_state)
            )
        clear_session_cookies(response)
        return response

    if "SAMLResponse" in params:
        try:
            in_response_to = saml_service.process_logout_response(
                request_data, post_binding=post_binding
            )
        except SAMLServiceError as e:
            logger.warning(f"LogoutResponse rejected for org {organization.id}: {e.error_code}")
            return _local_logout_redirect(LOGOUT_PAGE)

        logger.info(
            f"SAML logout completed for org {organization.id} "
            f"(InResponseTo={in_response_to or '-'})"
        )
        return _local_logout_redirect(sanitize_redirect_url(relay_state or LOGIN_PAGE, _app_url()))

    target = sanitize_redirect_url(redirect or LOGIN_PAGE, _app_url())
    if current is not None and current.protocol == SSOProtocol.SAML and config.slo_url:
        try:
            slo_redirect = saml_service.build_logout_request_url(
                request_data,
                name_id=current.subject,
                session_index=current.saml_session_index,
                relay_state=target,
            )
        except SAMLServiceError as e:
            logger.warning(f"SP-initiated SLO skipped for org {organization.id}: {e.error_code}")
            slo_redirect = None
        if slo_redirect:
            return _local_logout_redirect(slo_redirect)

    return _local_logout_redirect(target)


# =============================================================================
# OIDC Endpoints
# =============================================================================


@router.get(
    "/oidc/{organization_slug}/login",
    summary="Initiate OIDC Authorization",
    description="Start the OIDC authorization code flow.",
)
async def oidc_login(
    organization_slug: str,
    redirect: Optional[str] = Query(None, description="URL to return to after login"),
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    state_store: SSOStateStore = Depends(get_state_store),
) -> RedirectResponse:
    """
    Initiate OIDC authorization.

    State is stored only after discovery succeeds, so a failing provider
    leaves nothing behind.
    """
    organization, config = await _resolve_sso(
        store, config_service, organization_slug, SSOProtocol.OIDC
    )
    _require_enabled(organization, config)

    oidc_service = config_service.oidc_service(organization, config)
    state = oidc_service.generate_state()
    nonce = oidc_service.generate_nonce()
    authorization_url = await oidc_service.build_authorization_url(state, nonce)

    await state_store.save(
        state,
        PendingLogin(
            organization_id=organization.id,
            protocol=SSOProtocol.OIDC,
            nonce=nonce,
            redirect_to=sanitize_redirect_url(redirect, _app_url()),
        ),
    )

    logger.info(f"OIDC login initiated for org {organization.id}")
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


@router.get(
    "/oidc/{organization_slug}/callback",
    summary="OIDC Callback",
    description="Handle the authorization code returned by the OpenID provider.",
)
async def oidc_callback(
    organization_slug: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    state_store: SSOStateStore = Depends(get_state_store),
    sessions: SessionManager = Depends(get_session_manager),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> RedirectResponse:
    """
    OIDC redirect URI.

    Exchanges the code, verifies the ID token nonce when an ID token is
    returned, and maps the UserInfo claims to a profile.
    """
    organization, config = await _resolve_sso(
        store, config_service, organization_slug, SSOProtocol.OIDC
    )

    pending = await state_store.consume(state)

    if error:
        logger.warning(f"OIDC provider returned error for org {organization.id}: {error}")
        return _login_error_redirect(error)

    if pending is None or pending.organization_id != organization.id or (
        pending.protocol != SSOProtocol.OIDC
    ):
        logger.warning(f"OIDC callback for org {organization.id} with unknown state")
        return _login_error_redirect("INVALID_STATE")

    if not code:
        return _login_error_redirect("MISSING_CODE")

    oidc_service = config_service.oidc_service(organization, config)
    try:
        tokens = await oidc_service.exchange_code(code)

        claims: Dict[str, Any] = {}
        if tokens.id_token:
            claims = await oidc_service.validate_id_token(tokens.id_token, pending.nonce)

        profile = await oidc_service.fetch_user_info(tokens.access_token)
        if claims:
            profile = oidc_service.bind_to_id_token(profile, claims)

        result = await complete_sso_login(
            store,
            sessions,
            mfa_service,
            organization,
            config,
            profile,
            client_ip=get_client_ip(request),
            id_token=tokens.id_token,
        )
    except (OIDCServiceError, SSOLoginError, SecurityPolicyViolation) as e:
        logger.warning(f"OIDC login failed for org {organization.id}: {e.error_code}")
        return _login_error_redirect(e.error_code)

    return _login_redirect(result, pending.redirect_to)


@router.get(
    "/oidc/{organization_slug}/logout",
    summary="OIDC RP-Initiated Logout",
    description="End the local session and redirect to the provider's end-session endpoint.",
)
async def oidc_logout(
    organization_slug: str,
    request: Request,
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    sessions: SessionManager = Depends(get_session_manager),
) -> RedirectResponse:
    organization = await _resolve_organization(store, organization_slug)
    session = await sessions.revoke(get_session_token(request))
    config = await config_service.get_active(organization.id)

    if (
        session is not None
        and session.protocol == SSOProtocol.OIDC
        and isinstance(config, OIDCSSOConfig)
    ):
        end_session_url = await config_service.oidc_service(
            organization, config
        ).build_logout_url(
            id_token_hint=session.id_token,
            post_logout_redirect_uri=f"{_app_url()}{LOGIN_PAGE}",
        )
        if end_session_url:
            return _local_logout_redirect(end_session_url)

    return _local_logout_redirect()


def _backchannel_error(description: str, error: str = "invalid_request") -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": error, "error_description": description},
        headers=NO_CACHE_HEADERS,
    )


async def _read_logout_token(request: Request) -> Optional[str]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return None
        token = body.get("logout_token") if isinstance(body, dict) else None
    else:
        token = (await request.form()).get("logout_token")
    return token if isinstance(token, str) and token else None


@router.post(
    "/oidc/{organization_slug}/logout",
    summary="OIDC Back-Channel Logout",
    description="Receive a logout token from the OpenID provider.",
)
async def oidc_backchannel_logout(
    organization_slug: str,
    request: Request,
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    sessions: SessionManager = Depends(get_session_manager),
    handler: BackChannelLogoutHandler = Depends(get_backchannel_handler),
) -> Response:
    """
    Back-channel logout.

    Responds 200 whether or not a matching session existed.
    """
    logout_token = await _read_logout_token(request)
    if logout_token is None:
        return _backchannel_error("logout_token is required")

    organization = await store.get_organization_by_slug(organization_slug)
    config = await config_service.get_active(organization.id) if organization else None
    if organization is None or not isinstance(config, OIDCSSOConfig):
        return _backchannel_error("OIDC is not configured for this organization")

    try:
        claims = await handler.process(
            logout_token, config_service.oidc_service(organization, config)
        )
    except LogoutTokenError as e:
        return _backchannel_error(e.message, e.error_code)

    if claims.sid:
        revoked = await sessions.revoke_by_sid(organization.id, claims.sid)
    else:
        revoked = await sessions.revoke_by_subject(organization.id, claims.sub)

    logger.info(f"Back-channel logout for org {organization.id}: {revoked} sessions revoked")
    return Response(status_code=status.HTTP_200_OK, headers=NO_CACHE_HEADERS)


# =============================================================================
# Session Endpoints
# =============================================================================


@router.post(
    "/logout",
    summary="SSO Logout",
    description="Log out from SSO session.",
)
async def sso_logout(
    request: Request,
    store: DirectoryStore = Depends(get_store),
    config_service: SSOConfigService = Depends(get_sso_config_service),
    sessions: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """
    Log out from SSO session.

    Returns the IdP logout URL to visit when the provider supports one.
    """
    session = await sessions.revoke(get_session_token(request))
    redirect_url = None

    if session is not None:
        logger.info(f"SSO logout for user {session.user_id} in org {session.organization_id}")
        redirect_url = await _idp_logout_url(request, store, config_service, session)

    response = JSONResponse(content={"success": True, "redirect_url": redirect_url})
    clear_session_cookies(response)
    return response


async def _idp_logout_url(
    request: Request,
    store: DirectoryStore,
    config_service: SSOConfigService,
    session: UserSession,
) -> Optional[str]:
    organization = await store.get_organization(session.organization_id)
    config = await config_service.get_active(session.organization_id)
    if organization is None or config is None:
        return None

    if isinstance(config, SAMLSSOConfig) and session.protocol == SSOProtocol.SAML:
        try:
            return config_service.saml_service(organization, config).build_logout_request_url(
                _get_request_info(request),
                name_id=session.subject,
                session_index=session.saml_session_index,
                relay_state=LOGIN_PAGE,
            )
        except SAMLServiceError as e:
            logger.warning(f"No IdP logout URL for org {organization.id}: {e.error_code}")
            return None

    if isinstance(config, OIDCSSOConfig) and session.protocol == SSOProtocol.OIDC:
        return await config_service.oidc_service(organization, config).build_logout_url(
            id_token_hint=session.id_token,
            post_logout_redirect_uri=f"{_app_url()}{LOGIN_PAGE}",
        )

    return None


@router.get(
    "/session",
    summary="Get Current SSO Session",
    description="Get information about the current SSO session.",
)
async def get_sso_session(
    session: Optional[UserSession] = Depends(get_optional_session),
) -> Dict[str, Any]:
    """
    Get current SSO session information.

    Returns session details if a valid session exists.
    """
    if session is None:
        return {"authenticated": False}

    return {
        "authenticated": True,
        "mfa_pending": session.mfa_pending,
        "user": {
            "id": session.user_id,
            "email": session.email,
        },
        "organization_id": session.organization_id,
        "organization_slug": session.organization_slug,
        "protocol": session.protocol.value if session.protocol else "password",
        "expires_at": session.expires_at.isoformat(),
        "created_at": session.created_at.isoformat(),
    }
