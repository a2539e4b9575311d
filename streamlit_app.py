from __future__ import annotations
import json, base64
import streamlit as st
from provide.foundation import logger

from bk_ops import (
    OPS,
    MAX_INPUT_BYTES,
    PREVIEW_CHARS,
    Recipe,
    Step,
    try_decode_utf8,
    bytes_to_hex,
    clamp_bytes,
    magic_detect,
    run_recipe,
)

APP = "ByteKitchen"
st.set_page_config(page_title=APP, page_icon="🧪", layout="wide")

st.session_state.setdefault("recipe", Recipe())
st.session_state.setdefault("input_bytes", b"")

def recipe_to_code(recipe: Recipe) -> str:
    raw = json.dumps(recipe.to_json(), separators=(",",":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")

def recipe_from_code(s: str) -> Recipe:
    data = base64.urlsafe_b64decode(s.encode("ascii"))
    return Recipe.from_json(json.loads(data.decode("utf-8")))

def show_bytes(label: str, b: bytes):
    t1, t2 = st.tabs([f"{label} · text", f"{label} · hex"])
    with t1: st.code(try_decode_utf8(b)[:PREVIEW_CHARS] or "∅", language="text")
    with t2: st.code(bytes_to_hex(b)[:2*PREVIEW_CHARS] or "∅", language="text")

# ------------------------------
# Recipe from ?r= share code
# ------------------------------
code = st.query_params.get("r")
if code:
    try:
        st.session_state.recipe = recipe_from_code(code)
        st.toast("Loaded recipe from URL", icon="✅")
    except ValueError as e:
        logger.info(f"Ignoring bad recipe in URL: {e}")
        st.toast(f"Failed to load recipe: {e}", icon="⚠️")
    # applied once; a bad code must not come back on every rerun
    del st.query_params["r"]

recipe: Recipe = st.session_state.recipe

# ------------------------------
# Sidebar: recipe management
# ------------------------------
with st.sidebar:
    st.markdown(f"### 🧪 {APP}")
    st.download_button("💾 Save recipe", json.dumps(recipe.to_json(), indent=2),
                       file_name="recipe.json", mime="application/json")
    st.text_input("Share code (append as ?r=…)", value=recipe_to_code(recipe), disabled=True)
    uploaded = st.file_uploader("Load recipe", type=["json"])
    if uploaded:
        try:
            st.session_state.recipe = recipe = Recipe.from_json(json.loads(uploaded.read().decode("utf-8")))
        except ValueError as e:
            st.error(f"Load failed: {e}")

    st.divider()
    choice = st.selectbox("Add operation", list(OPS), format_func=lambda k: f"{OPS[k].category} · {OPS[k].name}")
    add, clear = st.columns(2)
    if add.button("➕ Add"):
        recipe.steps.append(Step(op_key=choice, params={}))
        st.rerun()
    if clear.button("🧹 Clear"):
        st.session_state.recipe = Recipe()
        st.rerun()

# ------------------------------
# Main: input | steps | output
# ------------------------------
left, middle, right = st.columns([2,3,2])

with left:
    st.subheader("📝 Input")
    f = st.file_uploader("Binary file (≤ 2 MB)")
    if f:
        st.session_state.input_bytes = clamp_bytes(f.read(), MAX_INPUT_BYTES)
    else:
        txt = st.text_area("Hex or text", height=220, value=try_decode_utf8(st.session_state.input_bytes))
        st.session_state.input_bytes = clamp_bytes(txt.encode("utf-8", errors="replace"), MAX_INPUT_BYTES)
    hints = magic_detect(try_decode_utf8(st.session_state.input_bytes)[:PREVIEW_CHARS])
    st.caption(" · ".join(f"{name} {int(conf*100)}%" for name, conf in hints) or "No obvious format")

with middle:
    st.subheader("🔧 Steps")
    for idx, step in enumerate(recipe.steps):
        op = OPS.get(step.op_key)
        title = op.name if op else f"unknown ({step.op_key})"
        with st.container(border=True):
            head, on, rm = st.columns([3,1,1])
            head.markdown(f"**{idx+1}. {title}**")
            step.enabled = on.checkbox("on", value=step.enabled, key=f"en_{idx}")
            if rm.button("🗑️", key=f"rm_{idx}"):
                del recipe.steps[idx]
                st.rerun()
            if op:
                step.params = step.params or {}
                for pname, default in op.params_schema.items():
                    step.params[pname] = st.text_input(pname, value=step.params.get(pname, default), key=f"{pname}_{idx}")

with right:
    st.subheader("📤 Output")
    result = run_recipe(st.session_state.input_bytes, recipe)
    if st.checkbox("Show intermediate outputs"):
        for idx, name, out in result.trace:
            with st.expander(f"After step {idx+1}: {name}"):
                show_bytes("out", out)
    if result.errors:
        st.error("\n".join(result.errors))
    else:
        show_bytes("result", result.data)
    st.caption(f"Bytes out: {len(result.data)}")
