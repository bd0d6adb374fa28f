"""
Tenant invitations: issuing them (with the invitation email), accepting
them with or without a signed-in account, and creating an account from one.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func as sa_func

from shared.db import (
    APP_ROLES,
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    Tenant,
    TenantInvitation,
    User,
    UserEmail,
    UserTenantMembership,
    utcnow,
)
from shared.errors import ServiceError
from services.auth_context import (
    AuthContext,
    find_user_by_email,
    get_membership,
    hash_password,
    is_super_admin,
    normalize_email,
    require_tenant_admin,
)
from services.email_service import send_invitation_email

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)
MIN_PASSWORD_LENGTH = 8


def _normalize_role(role: Any) -> str:
    value = str(role or "").strip().lower()
    if value not in APP_ROLES:
        raise ServiceError(f"Invalid role: {role}", 400)
    return value


def _get_tenant(db, tenant_id: str) -> Tenant:
    tenant = db.query(Tenant).filter_by(id=tenant_id).one_or_none()
    if not tenant:
        raise ServiceError("Tenant not found", 404)
    return tenant


def _upsert_membership(db, user_id: str, tenant_id: str, role: str, custom_role_id: Optional[str]) -> UserTenantMembership:
    membership = get_membership(db, user_id, tenant_id, active_only=False)
    if membership:
        membership.role = role
        membership.custom_role_id = custom_role_id
        membership.active = True
        return membership
    membership = UserTenantMembership(
        user_id=user_id,
        tenant_id=tenant_id,
        role=role,
        custom_role_id=custom_role_id,
        active=True,
    )
    db.add(membership)
    return membership


def _ensure_primary_email(db, user: User) -> None:
    email = normalize_email(user.email)
    existing = db.query(UserEmail).filter(sa_func.lower(UserEmail.email) == email).one_or_none()
    if existing:
        return
    db.add(UserEmail(user_id=user.id, email=email, is_primary=True, verified=True))


def _create_and_send(
    db,
    *,
    tenant: Tenant,
    email: str,
    role: str,
    custom_role_id: Optional[str],
    invited_by: AuthContext,
    link_base: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> TenantInvitation:
    invitation = TenantInvitation(
        tenant_id=tenant.id,
        email=email,
        role=role,
        custom_role_id=custom_role_id,
        first_name=first_name,
        last_name=last_name,
        invited_by=invited_by.user_id,
        expires_at=utcnow() + INVITATION_TTL,
    )
    db.add(invitation)
    db.flush()

    sent, error = send_invitation_email(
        to_email=email,
        tenant_name=tenant.name,
        role=role,
        link=f"{link_base}?token={invitation.token}",
        inviter_name=invited_by.user.full_name or invited_by.email,
    )
    if not sent:
        db.delete(invitation)
        db.commit()
        logger.error("Invitation email to %s failed: %s", email, error)
        raise ServiceError(f"Failed to send invitation email: {error}", 500)
    db.commit()
    logger.info("Invitation %s sent to %s for tenant %s", invitation.id, email, tenant.id)
    return invitation


def send_tenant_invitation(
    db,
    *,
    actor: AuthContext,
    email: str,
    role: str,
    tenant_id: str,
    origin: str,
    custom_role_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Invite an address to a tenant. Existing accounts are added straight away;
    unknown addresses receive an invitation link.
    """
    email = normalize_email(email)
    if not email or not role or not tenant_id:
        raise ServiceError("Email, role, and tenant_id are required", 400)
    role = _normalize_role(role)
    require_tenant_admin(db, actor.user_id, tenant_id)
    tenant = _get_tenant(db, tenant_id)

    existing_user = find_user_by_email(db, email)
    if existing_user:
        membership = get_membership(db, existing_user.id, tenant_id, active_only=False)
        if membership and membership.active:
            raise ServiceError("User is already a member of this tenant", 400)
        _upsert_membership(db, existing_user.id, tenant_id, role, custom_role_id)
        db.commit()
        return {
            "success": True,
            "message": "Existing user added to tenant successfully",
            "user_id": existing_user.id,
        }

    invitation = _create_and_send(
        db,
        tenant=tenant,
        email=email,
        role=role,
        custom_role_id=custom_role_id,
        invited_by=actor,
        link_base=f"{origin}/claim-invitation",
    )
    return {
        "success": True,
        "message": "Invitation sent successfully",
        "invitation_id": invitation.id,
    }


def create_tenant_user(
    db,
    *,
    actor: AuthContext,
    email: str,
    first_name: str,
    last_name: str,
    role: str,
    tenant_id: str,
    origin: str,
    custom_role_id: Optional[str] = None,
) -> Dict[str, Any]:
    email = normalize_email(email)
    if not email or not first_name or not last_name or not role or not tenant_id:
        raise ServiceError("Missing required fields: email, first_name, last_name, role, tenant_id", 400)
    role = _normalize_role(role)

    caller_roles = {
        (membership.role, membership.tenant_id)
        for membership in db.query(UserTenantMembership)
        .filter_by(user_id=actor.user_id)
        .filter(UserTenantMembership.active.is_(True))
        .all()
    }
    if not any(r in (ROLE_ADMIN, ROLE_SUPER_ADMIN) for r, _ in caller_roles):
        raise ServiceError("Insufficient permissions", 403)
    if not is_super_admin(db, actor.user_id) and (ROLE_ADMIN, tenant_id) not in caller_roles:
        raise ServiceError("Insufficient permissions for this tenant", 403)
    tenant = _get_tenant(db, tenant_id)

    try:
        invitation = _create_and_send(
            db,
            tenant=tenant,
            email=email,
            role=role,
            custom_role_id=custom_role_id,
            invited_by=actor,
            link_base=f"{origin}/accept-invitation",
            first_name=first_name.strip(),
            last_name=last_name.strip(),
        )
    except ServiceError as exc:
        raise ServiceError(exc.message, 400) from exc
    return {
        "success": True,
        "message": "Invitation sent successfully",
        "invitation_id": invitation.id,
        "email": email,
        "role": role,
    }


def get_pending_invitation(db, token: str) -> TenantInvitation:
    if not token:
        raise ServiceError("Invitation token is required", 400)
    invitation = (
        db.query(TenantInvitation)
        .filter_by(token=token)
        .filter(TenantInvitation.accepted_at.is_(None))
        .filter(TenantInvitation.expires_at > utcnow())
        .one_or_none()
    )
    if not invitation:
        raise ServiceError("Invalid or expired invitation", 404)
    return invitation


def _complete_acceptance(db, invitation: TenantInvitation, user: User) -> Tenant:
    if invitation.first_name and not user.first_name:
        user.first_name = invitation.first_name
    if invitation.last_name and not user.last_name:
        user.last_name = invitation.last_name
    _ensure_primary_email(db, user)
    _upsert_membership(db, user.id, invitation.tenant_id, invitation.role, invitation.custom_role_id)
    invitation.accepted_at = utcnow()
    return _get_tenant(db, invitation.tenant_id)


def accept_invitation(
    db,
    *,
    token: str,
    session: Optional[AuthContext],
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Accept an invitation. A signed-in caller whose address differs from the
    invited one gets the invited address linked as a secondary email.
    """
    invitation = get_pending_invitation(db, token)
    invited_email = normalize_email(invitation.email)
    secondary_added = False

    if session:
        user = session.user
        if normalize_email(user.email) != invited_email:
            owner = find_user_by_email(db, invited_email)
            if owner and owner.id != user.id:
                raise ServiceError("This invited email is already linked to another account", 400)
            if not owner:
                db.add(UserEmail(user_id=user.id, email=invited_email, is_primary=False, verified=True))
                secondary_added = True
    else:
        user = find_user_by_email(db, invited_email)
        if not user:
            raise ServiceError(
                "User account not found. Please check your invitation email and try the signup link first.",
                404,
            )

    if first_name:
        user.first_name = first_name.strip()
    if last_name:
        user.last_name = last_name.strip()
    tenant = _complete_acceptance(db, invitation, user)
    db.commit()
    logger.info("Invitation %s accepted by user %s", invitation.id, user.id)
    return {
        "success": True,
        "message": "Invitation accepted successfully",
        "tenant_name": tenant.name,
        "secondary_email_added": secondary_added,
    }


def create_account_from_invitation(
    db,
    *,
    token: str,
    first_name: str,
    last_name: str,
    password: str,
) -> Dict[str, Any]:
    if not token or not first_name or not last_name or not password:
        raise ServiceError("All fields are required: invitation_token, first_name, last_name, password", 400)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ServiceError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)
    invitation = get_pending_invitation(db, token)

    user = find_user_by_email(db, invitation.email)
    if user:
        user.password_hash = hash_password(password)
    else:
        user = User(email=normalize_email(invitation.email), password_hash=hash_password(password))
        db.add(user)
        db.flush()
    user.first_name = first_name.strip()
    user.last_name = last_name.strip()

    tenant = _complete_acceptance(db, invitation, user)
    db.commit()
    logger.info("Account %s created from invitation %s", user.id, invitation.id)
    return {
        "success": True,
        "message": "Account created successfully",
        "tenant_name": tenant.name,
        "user_id": user.id,
    }
