import os

import streamlit as st

from editor_bridge.client import BridgeClient, BridgeClientError

API_BASE = os.getenv("EDITOR_BRIDGE_API_BASE", os.getenv("API_BASE", "http://localhost:38123")).rstrip("/")


def _client() -> BridgeClient:
    if "client" not in st.session_state:
        st.session_state["client"] = BridgeClient(API_BASE)
    return st.session_state["client"]


def _reset_state() -> None:
    for key in ["converted", "source", "save_result", "error"]:
        if key in st.session_state:
            del st.session_state[key]


def _convert(path: str) -> None:
    try:
        st.session_state["converted"] = _client().convert(path)
        st.session_state["source"] = path
    except BridgeClientError as e:
        st.session_state["error"] = f"Convert failed: {e} {e.body}"


def _save(path: str) -> None:
    doc = st.session_state["converted"]
    try:
        st.session_state["save_result"] = _client().save(path, doc.data, doc.filehash)
    except BridgeClientError as e:
        st.session_state["error"] = f"Save failed: {e} {e.body}"


def main() -> None:
    st.set_page_config(page_title="Editor Bridge Console", page_icon="📄", layout="centered")
    st.title("📄 Editor Bridge Console")
    st.caption(f"API base: {API_BASE}")

    col1, col2 = st.columns([1, 1])
    with col1:
        if st.button("Restart", type="secondary"):
            _reset_state()
            st.rerun()
    with col2:
        healthy = _client().healthcheck()
        st.write("Bridge: online" if healthy else "Bridge: offline")

    source = st.text_input("Absolute path of the document to open")
    if source and st.button("Convert", type="primary"):
        with st.spinner("Converting..."):
            _convert(source)

    if "converted" in st.session_state:
        doc = st.session_state["converted"]
        st.success(f"Editor binary ready ({len(doc.data)} bytes, cache {doc.cache})")
        st.code(doc.filehash, language=None)
        with st.expander("Timing (ms)"):
            st.json(doc.timing)
        with st.expander("Media"):
            try:
                st.write(_client().media_list(doc.filehash) or "No media extracted")
            except BridgeClientError as e:
                st.warning(f"Media list unavailable: {e}")

        target = st.text_input("Save to (absolute path)", value=st.session_state.get("source", ""))
        if target and st.button("Save"):
            with st.spinner("Saving..."):
                _save(target)

    if "save_result" in st.session_state:
        result = st.session_state["save_result"]
        st.success(f"Saved {result.get('path')} ({result.get('size')} bytes)")

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
