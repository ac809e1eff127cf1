import logging
from typing import Optional

import streamlit as st

from errors import PermissionDeniedError, TripConnectError
from models import Actor, Profile, Role

logger = logging.getLogger(__name__)


def normalize_user(user_obj) -> Optional[dict]:
    if not user_obj:
        return None
    return {"id": getattr(user_obj, "id", None), "email": getattr(user_obj, "email", None)}


async def sign_in(client, email: str, password: str) -> dict:
    resp = await client.auth.sign_in_with_password({"email": email, "password": password})
    user = normalize_user(getattr(resp, "user", None))
    if not user or not user["id"]:
        raise PermissionDeniedError("Login failed. Check credentials.")
    return user


async def sign_up(client, email: str, password: str) -> dict:
    resp = await client.auth.sign_up({"email": email, "password": password})
    user = normalize_user(getattr(resp, "user", None))
    if not user or not user["id"]:
        raise PermissionDeniedError("Registration failed. Check the Supabase auth logs.")
    if getattr(resp, "session", None) is None:
        user["needs_confirmation"] = True
    return user


async def sign_out(client):
    await client.auth.sign_out()


async def get_profile(store, user_id: str) -> Optional[Profile]:
    rows = await store.select("profiles", eq={"user_id": user_id}, limit=1)
    return Profile(**rows[0]) if rows else None


async def save_profile(store, profile: Profile) -> Profile:
    payload = profile.model_dump(mode="json", exclude_none=True)
    if profile.id:
        row = await store.update("profiles", profile.id, payload)
    else:
        row = await store.insert("profiles", payload)
    return Profile(**row)


def actor_for(user: dict, profile: Optional[Profile]) -> Actor:
    role = profile.role if profile else Role.PASSENGER
    return Actor(id=user["id"], email=user.get("email"), role=role)


def login(run, client):
    """Streamlit login/register form. `run` executes a coroutine on the app loop."""
    st.title("Login or Register")
    email = st.text_input("Email")
    password = st.text_input("Password", type="password")
    action = st.radio("Action", ["Login", "Register"])

    if st.button(action):
        try:
            if action == "Login":
                user = run(sign_in(client, email, password))
            else:
                user = run(sign_up(client, email, password))
        except TripConnectError as e:
            st.error(str(e))
            return
        except Exception as e:
            logger.warning("Auth error for %s: %s", email, e)
            st.error(f"Auth error: {e}")
            return
        if user.get("needs_confirmation"):
            st.info("Check your inbox to confirm your email, then log in.")
            return
        st.session_state.user = user
        st.success(f"{action} successful!")
        st.rerun()
