# kosthub_web/app.py
# KostHub web surface (Streamlit)
#
# Run: streamlit run kosthub_web/app.py (from repo root)
#
# Every rerun is one navigation:
#   1. resolve identity (bounded; slow/unreachable backend = signed out)
#   2. ask the backend for the route decision
#   3. render the shell for the path actually shown
# Sign-in keeps the requested path and returns there afterwards.

from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st

from kosthub.entitlements import BOOLEAN_FEATURES, GRADED_FEATURES
from kosthub.errors import RoleDataIntegrityError
from kosthub.navigation import (
    LOGIN_PATH,
    MARKETPLACE_LOGIN_PATH,
    OWNER_CONSOLE_PAGES,
    Outcome,
    Shell,
    home_for,
)
from kosthub.schemas import NavigationDecisionResponse
from kosthub.session import IdentitySnapshot, SessionWatcher
from kosthub_web.api_client import (
    api_request,
    fetch_identity,
    fetch_navigation_decision,
    login,
    logout,
)
from kosthub_web.auth import (
    auth_hub,
    init_auth_state,
    nav_sequencer,
    pop_return_to,
    remember_return_to,
)
from kosthub_web.config import ENABLE_DEBUG_UI, IS_DEV


st.set_page_config(page_title="KostHub", layout="wide")

ss = st.session_state

CONTACT_SUPPORT_MESSAGE = (
    "Your account role could not be verified, so we can't open your workspace. "
    "Please contact KostHub support."
)


# ============================================================================
# Navigation
# ============================================================================

def go_to(path: str) -> None:
    """Set the next path; the caller reruns."""
    ss["nav_path"] = path
    st.query_params["path"] = path


def current_path() -> str:
    if not ss.get("nav_path"):
        ss["nav_path"] = st.query_params.get("path", "/")
    return ss["nav_path"]


def handle_api_error(resp: requests.Response, operation: str = "operation") -> None:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        detail = None

    if resp.status_code == 402:
        st.error(f"**Upgrade Required:** {detail or 'This feature requires a higher plan.'}")
    elif resp.status_code == 403:
        st.error(f"**Permission Denied:** {detail or f'You do not have permission for this {operation}.'}")
    elif resp.status_code == 404:
        st.warning("Not found.")
    elif resp.status_code == 409:
        st.error(CONTACT_SUPPORT_MESSAGE)
    else:
        st.error(f"Backend error {resp.status_code} on {operation}")


def get_json(path: str, params: Optional[Dict[str, Any]] = None, operation: str = "load") -> Optional[Any]:
    resp = api_request("GET", path, params=params)
    if resp is None:
        return None
    if resp.status_code != 200:
        handle_api_error(resp, operation)
        return None
    return resp.json()


# ============================================================================
# Common states
# ============================================================================

def render_pending() -> None:
    st.info("Checking your session...")


def render_contact_support() -> None:
    st.error(CONTACT_SUPPORT_MESSAGE)
    if st.button("Sign out"):
        logout()
        go_to(LOGIN_PATH)
        st.rerun()


def render_login(marketplace: bool) -> None:
    st.header("Find a kost" if marketplace else "Sign in to KostHub")
    if ss.get("return_to"):
        st.caption(f"You'll be taken back to {ss['return_to']} after signing in.")

    with st.form("login_form"):
        email = st.text_input("Email", key="login_email")
        password = st.text_input("Password", type="password", key="login_password")
        submitted = st.form_submit_button("Sign in")

    if not submitted:
        return
    if not email or not password:
        st.error("Please enter email and password.")
        return

    ok, result = login(email, password)
    if not ok:
        st.error(result)
        return

    go_to(pop_return_to() or result)
    st.rerun()


def render_sidebar(identity: IdentitySnapshot, decision: NavigationDecisionResponse) -> None:
    with st.sidebar:
        st.markdown("### KostHub")
        if identity.is_authenticated:
            st.caption(f"{identity.email or identity.user_id} ({identity.effective_role.value})")
            if st.button("Sign out", use_container_width=True):
                logout()
                go_to(MARKETPLACE_LOGIN_PATH if decision.shell == Shell.MARKETPLACE.value else LOGIN_PATH)
                st.rerun()
        elif identity.auth_error in ("timeout", "unreachable"):
            st.warning("Session check did not complete.")
            if st.button("Retry", use_container_width=True):
                st.rerun()

        if ENABLE_DEBUG_UI:
            st.markdown("---")
            st.caption(f"path={decision.path} area={decision.area} outcome={decision.outcome} shell={decision.shell}")


# ============================================================================
# Owner console
# ============================================================================

def render_owner_console(path: str) -> None:
    page = path.strip("/").split("/", 1)[0] or "dashboard"

    with st.sidebar:
        st.markdown("---")
        for name in OWNER_CONSOLE_PAGES:
            label = name.replace("-", " ").title()
            if st.button(label, key=f"nav_{name}", use_container_width=True, disabled=(name == page)):
                go_to(f"/{name}")
                st.rerun()

    if page == "dashboard":
        render_owner_dashboard()
    elif page in ("properties", "marketplace-settings"):
        render_marketplace_settings()
    else:
        st.header(page.replace("-", " ").title())
        st.caption("Nothing here yet.")


def render_owner_dashboard() -> None:
    st.header("Dashboard")
    summary = get_json("/entitlements", operation="entitlements")
    if summary is None:
        return
    if summary.get("lookup_failed"):
        st.warning("Plan details are temporarily unavailable; paid features are disabled until they load.")

    st.metric("Plan", summary.get("plan") or "No active plan")
    limits = summary.get("limits", {})
    col1, col2 = st.columns(2)
    col1.metric("Max properties", limits.get("max_properties", 0))
    col2.metric("Max rooms per property", limits.get("max_rooms_per_property", 0))

    st.subheader("Features")
    for feature, enabled in summary.get("features", {}).items():
        st.write(f"{'✅' if enabled else '—'} {feature.replace('_', ' ')}")
    for feature, tier in summary.get("tiers", {}).items():
        st.write(f"{feature.replace('_', ' ')}: **{tier}**")


def _split_lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def render_marketplace_settings() -> None:
    st.header("Marketplace settings")

    properties = get_json("/owner/properties", operation="properties")
    if properties is None:
        return
    if not properties:
        st.info("You have no properties yet.")
        return

    feature = get_json("/entitlements/marketplace_listing", operation="entitlements") or {}
    can_publish = bool(feature.get("enabled"))
    if not can_publish:
        st.info("Marketplace listing is not included in your current plan. "
                "You can still take a property off the marketplace.")

    names = {p["property_id"]: p["name"] for p in properties}
    selected = st.selectbox("Property", list(names), format_func=names.get)
    settings = next(p for p in properties if p["property_id"] == selected)

    with st.form("marketplace_settings_form"):
        enabled = st.toggle("Show on marketplace", value=settings["marketplace_enabled"])
        status = st.selectbox(
            "Status", ["draft", "published"],
            index=["draft", "published"].index(settings["marketplace_status"]),
        )
        description = st.text_area("Description", value=settings.get("description") or "")
        phone = st.text_input("Phone", value=settings.get("phone") or "")
        amenities = st.text_area("Common amenities (one per line)", value="\n".join(settings["common_amenities"]))
        rules = st.text_area("House rules (one per line)", value="\n".join(settings["rules"]))
        submitted = st.form_submit_button("Save")

    if not submitted:
        return

    payload = {
        "marketplace_enabled": enabled,
        "marketplace_status": status,
        "description": description or None,
        "phone": phone or None,
        "common_amenities": _split_lines(amenities),
        "rules": _split_lines(rules),
    }
    resp = api_request("PUT", f"/owner/properties/{selected}/marketplace", json=payload)
    if resp is None:
        return
    if resp.status_code != 200:
        handle_api_error(resp, "marketplace settings")
        return
    st.success("Saved.")


# ============================================================================
# Back office
# ============================================================================

STAFF_ROLES = ["superadmin", "admin", "tenant"]


def _detail(resp: requests.Response) -> str:
    try:
        return str(resp.json().get("detail"))
    except ValueError:
        return f"Backend error {resp.status_code}"


def render_plan_form(plan: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Plan fields and feature map; returns the payload when submitted."""
    plan = plan or {}
    features = plan.get("features") or {}
    key = plan.get("id") or "new"
    with st.form(f"plan_form_{key}"):
        name = st.text_input("Name", value=plan.get("name", ""))
        description = st.text_input("Description", value=plan.get("description") or "")
        cols = st.columns(3)
        price = cols[0].number_input("Price / month", min_value=0, value=int(plan.get("price") or 0), step=1000)
        max_properties = cols[1].number_input("Max properties", min_value=0,
                                              value=int(plan.get("max_properties", 1)))
        max_rooms = cols[2].number_input("Max rooms per property", min_value=0,
                                         value=int(plan.get("max_rooms_per_property", 10)))

        st.markdown("**Features**")
        chosen: Dict[str, Any] = {}
        flag_cols = st.columns(3)
        for i, flag in enumerate(sorted(BOOLEAN_FEATURES)):
            chosen[flag] = flag_cols[i % 3].checkbox(flag.replace("_", " ").capitalize(),
                                                     value=features.get(flag) is True,
                                                     key=f"{key}_{flag}")
        tier_cols = st.columns(len(GRADED_FEATURES))
        for col, (feature, options) in zip(tier_cols, GRADED_FEATURES.items()):
            current = features.get(feature)
            chosen[feature] = col.selectbox(feature.replace("_", " ").capitalize(), options,
                                            index=options.index(current) if current in options else 0,
                                            key=f"{key}_{feature}")

        if not st.form_submit_button("Save plan"):
            return None
    return {
        "name": name.strip(),
        "description": description.strip() or None,
        "price": price,
        "max_properties": max_properties,
        "max_rooms_per_property": max_rooms,
        "features": chosen,
    }


def render_plans() -> None:
    st.subheader("Plans")
    plans = get_json("/backoffice/plans", operation="plans")
    if plans is None:
        return
    if plans:
        df = pd.DataFrame(plans)[["name", "price", "max_properties", "max_rooms_per_property"]]
        df["price"] = df["price"].apply(format_rupiah)
        st.dataframe(df, use_container_width=True, hide_index=True)

    by_id = {p["id"]: p for p in plans}
    choice = st.selectbox("Edit plan", ["new"] + list(by_id),
                          format_func=lambda pid: "New plan" if pid == "new" else by_id[pid]["name"])
    plan = by_id.get(choice)
    payload = render_plan_form(plan)
    if payload is None:
        return

    if plan is None:
        resp = api_request("POST", "/backoffice/plans", json=payload)
        expected = 201
    else:
        resp = api_request("PUT", f"/backoffice/plans/{plan['id']}", json=payload)
        expected = 200
    if resp is None:
        return
    if resp.status_code == expected:
        st.success("Plan saved.")
        st.rerun()
    elif resp.status_code in (409, 422):
        st.error(_detail(resp))
    else:
        handle_api_error(resp, "save plan")


def render_staff(identity: IdentitySnapshot) -> None:
    st.subheader("Staff")
    staff = get_json("/backoffice/staff", operation="staff")
    if staff is None:
        return

    for member in staff:
        cols = st.columns([3, 2, 1])
        cols[0].write(f"**{member.get('name') or member['user_id']}** · {member.get('email') or ''}")
        role = member.get("role")
        cols[1].write(role if role in STAFF_ROLES else f"{role} (invalid)")
        if member["user_id"] != identity.user_id and cols[2].button("Revoke", key=f"revoke_{member['user_id']}"):
            resp = api_request("DELETE", f"/backoffice/staff/{member['user_id']}")
            if resp is not None and resp.status_code != 200:
                handle_api_error(resp, "revoke staff role")
            elif resp is not None:
                st.rerun()

    with st.form("staff_assign"):
        user_id = st.text_input("User ID")
        role = st.selectbox("Role", STAFF_ROLES)
        name = st.text_input("Display name")
        if st.form_submit_button("Assign role") and user_id.strip():
            resp = api_request("PUT", f"/backoffice/staff/{user_id.strip()}",
                               json={"role": role, "name": name.strip() or None})
            if resp is None:
                return
            if resp.status_code == 200:
                st.rerun()
            elif resp.status_code in (404, 409, 422):
                st.error(_detail(resp))
            else:
                handle_api_error(resp, "assign staff role")


def render_subscriptions() -> None:
    st.subheader("Subscriptions")
    status = st.selectbox("Status", ["all", "active", "cancelled", "expired"])
    params = None if status == "all" else {"status": status}
    subscriptions = get_json("/backoffice/subscriptions", params=params, operation="subscriptions")
    if subscriptions is None:
        return
    if not subscriptions:
        st.caption("No subscriptions.")
        return

    for sub in subscriptions:
        cols = st.columns([3, 2, 2, 1])
        cols[0].write(f"**{sub['user_id']}** · {sub.get('plan_name') or sub['plan_id']}")
        cols[1].write(sub["status"])
        cols[2].write(sub.get("end_date") or "open-ended")
        if sub["status"] == "active" and cols[3].button("Cancel", key=f"cancel_{sub['id']}"):
            resp = api_request("POST", f"/backoffice/subscriptions/{sub['id']}/cancel")
            if resp is not None and resp.status_code != 200:
                handle_api_error(resp, "cancel subscription")
            elif resp is not None:
                st.rerun()


def render_backoffice(identity: IdentitySnapshot) -> None:
    st.header("Back office")
    plans_tab, staff_tab, subscriptions_tab = st.tabs(["Plans", "Staff", "Subscriptions"])
    with plans_tab:
        render_plans()
    with staff_tab:
        render_staff(identity)
    with subscriptions_tab:
        render_subscriptions()


# ============================================================================
# Marketplace
# ============================================================================

SORT_LABELS = {
    None: "Default",
    "price_asc": "Price: low to high",
    "price_desc": "Price: high to low",
    "availability": "Most rooms available",
}


SAVED_PATH = "/marketplace/saved"


def saved_property_ids() -> List[str]:
    saved = get_json("/saved-properties", operation="saved properties") or []
    return [s["property_id"] for s in saved]


def toggle_saved(property_id: str, saved: bool) -> None:
    resp = api_request("DELETE" if saved else "PUT", f"/saved-properties/{property_id}")
    if resp is not None and resp.status_code != 200:
        handle_api_error(resp, "saved properties")
    elif resp is not None:
        st.rerun()


def render_saved_properties() -> None:
    st.header("Saved properties")
    if st.button("Back to listings"):
        go_to("/marketplace")
        st.rerun()

    saved = get_json("/saved-properties", operation="saved properties")
    if saved is None:
        return
    if not saved:
        st.caption("Nothing saved yet. Properties that are no longer listed are hidden.")
        return

    for item in saved:
        with st.container(border=True):
            st.markdown(f"**{item['name']}** · {item.get('city') or ''}")
            st.write(f"From {format_rupiah(item.get('lowest_price'))} / month")
            cols = st.columns(2)
            if cols[0].button("View", key=f"saved_view_{item['property_id']}"):
                go_to(f"/marketplace/properties/{item['property_id']}")
                st.rerun()
            if cols[1].button("Remove", key=f"saved_remove_{item['property_id']}"):
                toggle_saved(item["property_id"], saved=True)


def format_rupiah(value: Optional[float]) -> str:
    return "—" if value is None else f"Rp {value:,.0f}".replace(",", ".")


def render_marketplace(path: str) -> None:
    parts = path.strip("/").split("/")
    if len(parts) == 3 and parts[1] == "properties":
        render_property_detail(parts[2])
        return
    if parts[1:] == ["saved"]:
        render_saved_properties()
        return

    st.header("Find a kost")

    with st.sidebar:
        st.markdown("---")
        if st.button("Saved properties", use_container_width=True):
            go_to(SAVED_PATH)
            st.rerun()
        search = st.text_input("Search")
        city = st.text_input("City")
        min_price = st.number_input("Min price", min_value=0, value=0, step=100000)
        max_price = st.number_input("Max price (0 = any)", min_value=0, value=0, step=100000)
        gender = st.selectbox("Renter gender", ["", "male", "female", "any"],
                              format_func=lambda g: g or "No preference")
        room_type = st.text_input("Room type")
        include_full = st.checkbox("Include fully booked", value=True)
        sort = st.selectbox("Sort", list(SORT_LABELS), format_func=SORT_LABELS.get)

    params: Dict[str, Any] = {"include_fully_booked": include_full}
    for key, value in (("search", search), ("city", city), ("gender", gender),
                       ("room_type", room_type), ("sort", sort)):
        if value:
            params[key] = value
    if min_price:
        params["min_price"] = min_price
    if max_price:
        params["max_price"] = max_price

    data = get_json("/marketplace/listings", params=params, operation="listings")
    if data is None:
        return

    if data.get("partial_failures"):
        st.caption(f"{len(data['partial_failures'])} properties could not be loaded right now.")
    st.caption(f"{data['total']} listings")

    for listing in data["listings"]:
        with st.container(border=True):
            st.markdown(f"**{listing['property_name']}** · {listing['room_type']}")
            st.write(f"{listing.get('city') or ''} · {format_rupiah(listing['lowest_price'])} / month")
            if listing["available_room_count"] > 0:
                st.write(f"{listing['available_room_count']} of {listing['total_room_count']} rooms available")
            else:
                st.write("Fully booked")
            if st.button("View", key=f"view_{listing['property_id']}_{listing['room_type_id']}"):
                go_to(f"/marketplace/properties/{listing['property_id']}")
                st.rerun()


def render_property_detail(property_id: str) -> None:
    detail = get_json(f"/marketplace/properties/{property_id}", operation="property")
    if st.button("Back to listings"):
        go_to("/marketplace")
        st.rerun()
    if detail is None:
        return

    st.header(detail["name"])
    is_saved = property_id in saved_property_ids()
    if st.button("Remove from saved" if is_saved else "Save", key=f"save_{property_id}"):
        toggle_saved(property_id, is_saved)
    st.write(detail.get("address") or "")
    if detail.get("description"):
        st.write(detail["description"])
    for room_type in detail.get("room_types", []):
        with st.container(border=True):
            st.markdown(f"**{room_type['name']}** · {format_rupiah(room_type['price'])} / month")
            st.write(f"{room_type['available_room_count']} rooms available")


# ============================================================================
# Main
# ============================================================================

def render_allowed(decision: NavigationDecisionResponse, identity: IdentitySnapshot) -> None:
    if decision.area in ("login", "marketplace/auth") and identity.is_authenticated:
        go_to(pop_return_to() or home_for(identity.effective_role))
        st.rerun()

    if decision.area == "login":
        render_login(marketplace=False)
    elif decision.area == "marketplace/auth":
        render_login(marketplace=True)
    elif decision.shell == Shell.BACKOFFICE.value:
        render_backoffice(identity)
    elif decision.shell == Shell.MARKETPLACE.value:
        render_marketplace(decision.path)
    else:
        render_owner_console(decision.path)


def main() -> None:
    init_auth_state()
    path = current_path()

    # Subscribed for this run only; released when the run ends or raises
    with SessionWatcher(auth_hub(), fetch_identity, nav_sequencer()) as watcher:
        try:
            identity = watcher.navigate()
        except RoleDataIntegrityError:
            print(f"[ROUTING] path={path} | outcome=contact_support")
            render_contact_support()
            return

        decision = fetch_navigation_decision(path)
        print(f"[ROUTING] path={decision.path} | outcome={decision.outcome} | shell={decision.shell} "
              f"| role={identity.effective_role.value if identity.effective_role else None}")

        render_sidebar(identity, decision)

        if decision.outcome == Outcome.PENDING.value:
            render_pending()
        elif decision.outcome == Outcome.CONTACT_SUPPORT.value:
            render_contact_support()
        elif decision.outcome == Outcome.REDIRECT.value:
            if decision.return_to:
                remember_return_to(decision.return_to)
            if IS_DEV:
                print(f"[ROUTING] redirect {decision.path} -> {decision.location}")
            go_to(decision.target)
            st.rerun()
        else:
            render_allowed(decision, identity)


if __name__ == "__main__":
    main()
