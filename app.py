"""
Page Scanner - Main Streamlit Application

A document scanning application with:
- Automatic page edge detection with a steadiness check
- Manual crop fallback
- Text and photo enhancement profiles
- Page reordering, retake and delete
- Export to multi-page PDF or one PNG/JPG per page
- Export favorites with JSON import/export
"""

import dataclasses
import logging
from datetime import datetime
from pathlib import Path

import cv2
import streamlit as st

from crop_editor import corners_to_default, draw_outline, render_crop_editor
from pagescan.config import (
    ScannerConfig,
    configure_logging,
    import_user_config,
    load_user_config,
    save_user_config,
)
from pagescan.errors import PartialExportError, ScannerError, UnknownPageId
from pagescan.imaging import cv2_to_pil, frame_from_bytes
from pagescan.models import ExportFormat, NamingContext
from pagescan.naming import resolve_name, unknown_tokens
from pagescan.pipeline import CaptureStatus, ScanPipeline

logger = logging.getLogger(__name__)

FORMATS = [f.value.upper() for f in ExportFormat]


# Page configuration
st.set_page_config(
    page_title="Page Scanner",
    page_icon="📄",
    layout="wide",
    initial_sidebar_state="expanded"
)


def init_session_state():
    """Initialize session state variables."""
    if 'user_config' not in st.session_state:
        st.session_state.user_config = load_user_config()
    if 'pipeline' not in st.session_state:
        config = ScannerConfig.from_env()
        configure_logging(config.log_level)
        pipeline = ScanPipeline(config)
        pipeline.apply_preferences(st.session_state.user_config.preferences)
        st.session_state.pipeline = pipeline
    # Frame waiting for a manual crop, and the page being retaken if any
    if 'pending_frame' not in st.session_state:
        st.session_state.pending_frame = None
    if 'pending_corners' not in st.session_state:
        st.session_state.pending_corners = None
    if 'pending_low_confidence' not in st.session_state:
        st.session_state.pending_low_confidence = False
    if 'crop_revision' not in st.session_state:
        st.session_state.crop_revision = 0
    if 'retake_id' not in st.session_state:
        st.session_state.retake_id = None
    if 'editing_favorite' not in st.session_state:
        st.session_state.editing_favorite = None
    if 'last_export' not in st.session_state:
        st.session_state.last_export = None


def show_error(error: ScannerError):
    """Show a pipeline error with its suggestion."""
    st.error(error.message)
    if error.suggestion:
        st.caption(f"💡 {error.suggestion}")


def drop_stale_retake():
    """Forget the retake target once its page has left the session."""
    page = st.session_state.pipeline.session.find(st.session_state.retake_id)
    if page is None:
        st.session_state.retake_id = None
    return page


def persist_user_config(user_config) -> bool:
    """Write favorites/preferences to disk and keep them in the session."""
    st.session_state.user_config = user_config
    try:
        save_user_config(user_config)
    except OSError as e:
        logger.warning(f"Failed to save user config: {e}")
        st.error(f"Could not save settings: {e}")
        return False
    return True


def store_outcome(outcome):
    """Report a capture outcome; queue the frame for manual crop if needed."""
    if outcome.ok:
        record = outcome.record
        st.success(f"✅ Page {record.ordinal + 1} captured")
        if outcome.low_confidence:
            st.warning("Several outlines were similar; check the page and retake if needed.")
        st.session_state.pending_frame = None
        st.session_state.retake_id = None
        return

    st.warning(outcome.message)


def run_capture(frame, quad):
    """Capture a new page or replace the page being retaken."""
    pipeline: ScanPipeline = st.session_state.pipeline
    retake_id = st.session_state.retake_id
    if retake_id is None:
        return pipeline.capture(frame, quad)
    try:
        return pipeline.retake(retake_id, frame, quad)
    except UnknownPageId as e:
        st.session_state.retake_id = None
        show_error(e)
        return None


def capture_section():
    """Camera capture with automatic detection."""
    pipeline: ScanPipeline = st.session_state.pipeline

    if st.session_state.pending_frame is not None:
        manual_crop_section()
        return

    retake_page = drop_stale_retake()
    if retake_page is not None:
        st.info(f"Retaking page {retake_page.ordinal + 1}")
        if st.button("Cancel retake"):
            st.session_state.retake_id = None
            st.rerun()

    st.subheader("📷 Capture")

    col1, col2 = st.columns([2, 1])

    with col2:
        profile = st.selectbox(
            "Enhancement profile",
            pipeline.enhancer.profile_names,
            index=pipeline.enhancer.profile_names.index(pipeline.session.active_profile)
            if pipeline.session.active_profile in pipeline.enhancer.profile_names else 0,
        )
        if profile != pipeline.session.active_profile:
            pipeline.set_profile(profile)
        always_review = st.checkbox(
            "Review every crop",
            value=False,
            help="Show the crop editor even when the page edges were found"
        )

    with col1:
        snapshot = st.camera_input("Point the camera at the page", key="camera")
        uploaded = st.file_uploader("…or upload a photo", type=['jpg', 'jpeg', 'png'], key="uploader")

    source = snapshot or uploaded
    if source is None:
        return

    frame = frame_from_bytes(source.getvalue(), device_id="streamlit")
    if frame is None:
        st.error("Could not read the image")
        return

    detection, reading = pipeline.preview(frame)

    with col2:
        st.caption(
            f"Steadiness {reading.progress:.0%} · "
            f"sharpness {reading.sharpness:.0f}"
        )

    if detection.found:
        corners = [list(p) for p in detection.quad.points]
        color = (7, 193, 255) if detection.low_confidence else (80, 175, 76)
        st.image(cv2.cvtColor(draw_outline(frame.image, corners, color), cv2.COLOR_BGR2RGB),
                 caption=f"Detected page ({detection.area_ratio:.0%} of frame)",
                 use_container_width=True)
    else:
        corners = corners_to_default(frame.width, frame.height)
        st.warning("No page edges found. Adjust the crop manually.")

    if st.button("📥 Use this frame", type="primary"):
        if not detection.found or detection.low_confidence or always_review:
            st.session_state.pending_frame = frame
            st.session_state.pending_corners = corners
            st.session_state.pending_low_confidence = detection.low_confidence
            st.rerun()

        with st.spinner("Processing page..."):
            outcome = run_capture(frame, detection.quad)

        if outcome is None:
            return
        if outcome.status is CaptureStatus.CAPTURED:
            store_outcome(outcome)
        else:
            st.session_state.pending_frame = frame
            st.session_state.pending_corners = corners
            st.rerun()


def manual_crop_section():
    """Manual crop for a frame the detector could not outline."""
    pipeline: ScanPipeline = st.session_state.pipeline
    frame = st.session_state.pending_frame

    st.subheader("✂️ Adjust Crop")

    quad = render_crop_editor(
        frame,
        initial_corners=st.session_state.pending_corners,
        min_area_ratio=pipeline.config.min_area_ratio,
        low_confidence=st.session_state.pending_low_confidence,
        key=f"crop_{int(frame.timestamp * 1000)}_{st.session_state.crop_revision}",
    )

    col1, col2, col3 = st.columns(3)

    with col1:
        if st.button("✅ Apply Crop", type="primary", disabled=quad is None):
            outcome = run_capture(frame, quad)
            if outcome is not None and outcome.ok:
                st.session_state.pending_corners = None
                store_outcome(outcome)
                st.rerun()
            elif outcome is not None:
                show_error(outcome.error)

    with col2:
        if st.button("📐 Full Frame"):
            st.session_state.pending_corners = corners_to_default(frame.width, frame.height, margin=0.0)
            st.session_state.crop_revision += 1
            st.rerun()

    with col3:
        if st.button("🗑️ Discard Frame"):
            st.session_state.pending_frame = None
            st.session_state.pending_corners = None
            st.rerun()


def pages_section():
    """Page list with reorder, retake and delete."""
    pipeline: ScanPipeline = st.session_state.pipeline
    pages = pipeline.session.snapshot()

    st.subheader(f"📄 Pages ({len(pages)})")

    if not pages:
        st.info("No pages yet. Capture one in the Capture tab.")
        return

    cols_per_row = 4
    for row_start in range(0, len(pages), cols_per_row):
        cols = st.columns(cols_per_row)
        for col, page in zip(cols, pages[row_start:row_start + cols_per_row]):
            with col:
                st.image(page.thumbnail, caption=f"Page {page.ordinal + 1} · {page.profile_name}")

                b1, b2, b3, b4 = st.columns(4)
                try:
                    with b1:
                        if st.button("◀", key=f"left_{page.id}", disabled=page.ordinal == 0):
                            pipeline.session.reorder(page.id, page.ordinal - 1)
                            st.rerun()
                    with b2:
                        if st.button("▶", key=f"right_{page.id}", disabled=page.ordinal == len(pages) - 1):
                            pipeline.session.reorder(page.id, page.ordinal + 1)
                            st.rerun()
                    with b3:
                        if st.button("🔄", key=f"retake_{page.id}", help="Retake"):
                            st.session_state.retake_id = page.id
                            st.rerun()
                    with b4:
                        if st.button("🗑️", key=f"delete_{page.id}", help="Delete"):
                            pipeline.session.delete(page.id)
                            if st.session_state.retake_id == page.id:
                                st.session_state.retake_id = None
                            st.rerun()
                except ScannerError as e:
                    show_error(e)

    if st.button("Discard document"):
        pipeline.session.discard()
        st.session_state.retake_id = None
        st.rerun()


def export_section():
    """Export panel with favorites and naming preview."""
    pipeline: ScanPipeline = st.session_state.pipeline
    user_config = st.session_state.user_config
    prefs = user_config.preferences
    pages = pipeline.session.snapshot()

    st.subheader("💾 Export")

    favorite_names = ["(none)"] + [f.name for f in user_config.favorites]
    favorite_name = st.selectbox("Favorite", favorite_names)
    favorite = user_config.find_favorite(favorite_name)

    col1, col2 = st.columns(2)

    default_format = pipeline.session.export_format.value.upper()
    with col1:
        if favorite:
            # folder, format and profile come from the favorite
            st.text_input("Folder", value=favorite.folder, disabled=True)
            export_format = st.radio("Format", FORMATS, index=FORMATS.index(favorite.format),
                                     horizontal=True, disabled=True)
        else:
            folder = st.text_input("Folder", value=str(Path.home()))
            export_format = st.radio("Format", FORMATS, index=FORMATS.index(default_format), horizontal=True)
        template = st.text_input("File name", value=prefs.naming_pattern)

    with col2:
        dpi = st.select_slider("Resolution (dpi)", options=[150, 200, 300, 600], value=pipeline.config.export_dpi)
        jpg_quality = st.slider("JPG quality", 1, 100, pipeline.config.jpg_quality, disabled=export_format != "JPG")
        include_time = st.checkbox("Include time", value=True)
        append_page_count = st.checkbox("Append page count", value=False)
        append_dpi = st.checkbox("Append resolution", value=False)

    for token in unknown_tokens(template):
        st.caption(f"⚠️ Unknown token {{{token}}} will be kept as written")

    profile_name = favorite.profile if favorite else pipeline.session.active_profile
    naming = dict(
        include_time=include_time,
        append_page_count=append_page_count,
        append_dpi=append_dpi,
    )
    preview = resolve_name(
        template,
        NamingContext.now(
            profile=profile_name,
            format=ExportFormat.parse(export_format),
            page_count=len(pages),
            dpi=dpi,
        ),
        **naming,
    )
    st.caption(f"Preview: `{preview}`")

    if st.button("📤 Export", type="primary", disabled=not pages):
        try:
            if favorite:
                job = pipeline.build_favorite_job(
                    dataclasses.replace(favorite, folder=str(Path(favorite.folder).expanduser())),
                    dpi=dpi,
                    jpg_quality=jpg_quality,
                    template=template,
                    created_at=datetime.now(),
                    **naming,
                )
            else:
                job = pipeline.build_job(
                    Path(folder).expanduser(),
                    format=export_format,
                    dpi=dpi,
                    jpg_quality=jpg_quality,
                    template=template,
                    profile_name=profile_name,
                    created_at=datetime.now(),
                    **naming,
                )
        except ScannerError as e:
            show_error(e)
            return

        handle = pipeline.export(job)
        with st.spinner(f"Exporting {len(job.pages)} page(s)..."):
            try:
                result = handle.result()
            except PartialExportError as e:
                show_error(e)
                for failed in e.details["failed"]:
                    st.caption(f"Page id {failed['page_id']} → {failed['file_name']}: {failed['error']}")
                st.session_state.last_export = e.result
                return
            except ScannerError as e:
                show_error(e)
                return

        st.session_state.last_export = result
        drop_stale_retake()
        if result.cancelled:
            st.warning("Export cancelled")
        else:
            st.success(f"✅ Wrote {len(result.paths)} file(s), {result.total_bytes / 1024:.0f} KB")
            for path in result.paths:
                st.caption(str(path))


def favorites_section():
    """Favorites and preferences: add, edit, delete, import and export."""
    pipeline: ScanPipeline = st.session_state.pipeline
    user_config = st.session_state.user_config
    profiles = pipeline.enhancer.profile_names

    st.subheader("⭐ Favorites")

    col1, col2 = st.columns([1, 1])

    editing = next(
        (f for f in user_config.favorites if f.id == st.session_state.editing_favorite), None
    )

    with col1:
        with st.form("favorite_form", clear_on_submit=True):
            st.markdown("**Edit favorite**" if editing else "**New favorite**")
            name = st.text_input("Name", value=editing.name if editing else "")
            folder = st.text_input("Folder", value=editing.folder if editing else "")
            fav_format = st.selectbox("Format", FORMATS,
                                      index=FORMATS.index(editing.format) if editing else 0)
            profile = st.selectbox("Profile", profiles,
                                   index=profiles.index(editing.profile)
                                   if editing and editing.profile in profiles else 0)
            submitted = st.form_submit_button("💾 Save favorite", type="primary")

        if submitted:
            updated = dataclasses.replace(user_config, favorites=list(user_config.favorites))
            try:
                updated.save_favorite(name, folder, fav_format, profile,
                                      fav_id=editing.id if editing else None)
            except ScannerError as e:
                show_error(e)
            else:
                st.session_state.editing_favorite = None
                if persist_user_config(updated):
                    st.rerun()

        if editing and st.button("Cancel edit"):
            st.session_state.editing_favorite = None
            st.rerun()

    with col2:
        if not user_config.favorites:
            st.info("No favorites yet.")
        for fav in user_config.favorites:
            c1, c2, c3 = st.columns([4, 1, 1])
            with c1:
                st.markdown(f"**{fav.name}** · {fav.format} · {fav.profile}")
                st.caption(fav.folder)
            with c2:
                if st.button("✏️", key=f"edit_fav_{fav.id}", help="Edit"):
                    st.session_state.editing_favorite = fav.id
                    st.rerun()
            with c3:
                if st.button("🗑️", key=f"delete_fav_{fav.id}", help="Delete"):
                    updated = dataclasses.replace(user_config, favorites=list(user_config.favorites))
                    updated.remove_favorite(fav.id)
                    if persist_user_config(updated):
                        st.rerun()

    st.divider()
    st.subheader("⚙️ Preferences")

    prefs = user_config.preferences
    p1, p2, p3 = st.columns(3)
    with p1:
        default_format = st.selectbox("Default format", FORMATS, index=FORMATS.index(prefs.default_format))
    with p2:
        default_profile = st.selectbox("Default profile", profiles,
                                       index=profiles.index(prefs.default_profile)
                                       if prefs.default_profile in profiles else 0)
    with p3:
        naming_pattern = st.text_input("Naming pattern", value=prefs.naming_pattern)

    if st.button("Save preferences"):
        new_prefs = dataclasses.replace(
            prefs,
            default_format=default_format,
            default_profile=default_profile,
            naming_pattern=naming_pattern,
        )
        if persist_user_config(dataclasses.replace(user_config, preferences=new_prefs)):
            pipeline.apply_preferences(new_prefs)
            st.success("Preferences saved")

    st.divider()
    st.subheader("🔁 Import / Export")

    st.download_button(
        "⬇️ Export settings",
        data=user_config.to_json(),
        file_name="pagescan-config.json",
        mime="application/json",
    )

    uploaded = st.file_uploader("Import settings", type=['json'], key="config_import")
    if uploaded is not None and st.button("⬆️ Import"):
        try:
            imported = import_user_config(uploaded.getvalue().decode("utf-8"), current=user_config)
        except UnicodeDecodeError:
            st.error("The settings file is not UTF-8 text")
        except ScannerError as e:
            show_error(e)
        else:
            if persist_user_config(imported):
                st.success(f"Imported {len(imported.favorites)} favorite(s)")


def main():
    """Main application."""
    init_session_state()
    pipeline: ScanPipeline = st.session_state.pipeline

    # Sidebar
    st.sidebar.title("📄 Page Scanner")
    st.sidebar.metric("Pages", len(pipeline.session))
    st.sidebar.caption(f"Session: {pipeline.session.state.value}")

    pages = pipeline.session.snapshot()
    if pages:
        st.sidebar.divider()
        st.sidebar.image(cv2_to_pil(pages[-1].page.image), caption="Last page", use_container_width=True)

    # Main content
    st.title("📄 Page Scanner")

    tab1, tab2, tab3, tab4 = st.tabs([
        "📷 Capture",
        "📄 Pages",
        "💾 Export",
        "⭐ Favorites",
    ])

    with tab1:
        capture_section()

    with tab2:
        pages_section()

    with tab3:
        export_section()

    with tab4:
        favorites_section()


if __name__ == "__main__":
    main()
