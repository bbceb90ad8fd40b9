"""Acquisition and release of the on-device model.

State machine: not_setup -> downloading -> preparing -> ready, returning to
not_setup on removal or failure. The handle is set only on entering ready and
cleared whenever the status regresses.
"""

from typing import Callable, Optional

import structlog

from ..cancellation import CancellationToken
from ..domain.models import Alert, ModelLoadingState, ModelStatus
from ..engines.base import InferenceEngine, LanguageModel

logger = structlog.get_logger()


class ModelLifecycleManager:
    """Owns the model handle for one session; callers borrow it per call."""

    def __init__(
        self,
        engine: InferenceEngine,
        token: CancellationToken,
        initial_model_id: Optional[str] = None,
        on_alert: Optional[Callable[[Alert], None]] = None,
        on_model_ready: Optional[Callable[[LanguageModel], None]] = None,
        on_model_removed: Optional[Callable[[], None]] = None,
    ) -> None:
        self._engine = engine
        self._token = token
        self._on_alert = on_alert
        self._on_model_ready = on_model_ready
        self._on_model_removed = on_model_removed
        self._handle: Optional[LanguageModel] = None
        self._setup_in_progress = False
        self.status = ModelStatus.NOT_SETUP
        self.download_progress = 0.0
        self.selected_model_id = initial_model_id

    @property
    def handle(self) -> Optional[LanguageModel]:
        return self._handle

    @property
    def loading_state(self) -> ModelLoadingState:
        return ModelLoadingState.from_status(self.status)

    @property
    def setup_in_progress(self) -> bool:
        return self._setup_in_progress

    async def setup_model(self, model_id: str) -> bool:
        """Download and prepare model_id, replacing any other active model.

        Returns True when the model ends up ready. A call made while another
        setup is running is dropped.
        """
        if self._setup_in_progress:
            logger.warning("model_setup_ignored", model_id=model_id, reason="setup_in_progress")
            return False
        if model_id == self.selected_model_id and self.status == ModelStatus.READY:
            return True

        self._setup_in_progress = True
        try:
            if self.selected_model_id and self.selected_model_id != model_id:
                previous_id, previous_handle = self.selected_model_id, self._handle
                self._reset()
                self.selected_model_id = None
                await self._release_previous(previous_id, previous_handle)

            if not self._token.alive:
                return False

            logger.info("model_setup_started", model_id=model_id)
            self.status = ModelStatus.DOWNLOADING
            self.download_progress = 0.0
            model = self._engine.language_model(model_id)

            await model.download(self._record_progress)
            if not self._token.alive:
                return False

            self.download_progress = 100.0
            self.status = ModelStatus.PREPARING
            await model.prepare()
            if not self._token.alive:
                return False

            self._activate(model)
            return True
        except Exception as e:
            failed_stage = self.status.value
            logger.error("model_setup_failed", model_id=model_id, stage=failed_stage, error=str(e))
            await self._remove_artifact(model_id)
            if self._token.alive:
                self._alert(f"{failed_stage} Error", str(e))
                self._reset()
            return False
        finally:
            self._setup_in_progress = False

    async def check_model_exists(self, model_id: Optional[str] = None) -> bool:
        """Make an already-downloaded model ready without downloading it."""
        target = model_id or self.selected_model_id
        if not target:
            return False
        if self._setup_in_progress:
            logger.warning("model_check_ignored", model_id=target, reason="setup_in_progress")
            return False

        self._setup_in_progress = True
        try:
            model = self._engine.language_model(target)
            if not await model.is_downloaded():
                logger.info("model_not_downloaded", model_id=target)
                return False
            if not self._token.alive:
                return False

            self.status = ModelStatus.PREPARING
            await model.prepare()
            if not self._token.alive:
                return False

            self._activate(model)
            return True
        except Exception as e:
            logger.error("model_check_failed", model_id=target, error=str(e))
            if model_id:
                await self._remove_artifact(model_id)
            if self._token.alive:
                self._alert("Model Check Failed", str(e))
                self._reset()
            return False
        finally:
            self._setup_in_progress = False

    async def remove_model(self) -> None:
        """Unload the handle and delete the selected model's artifact."""
        handle = self._handle
        if handle is not None:
            self._handle = None
            self.status = ModelStatus.NOT_SETUP
            self.download_progress = 0.0
            await self._unload(handle)

        model_id = self.selected_model_id
        if model_id:
            await self._remove_artifact(model_id)

        if not self._token.alive:
            return
        self._reset()
        self.selected_model_id = None
        logger.info("model_removed", model_id=model_id)
        if self._on_model_removed:
            self._on_model_removed()

    async def remove_model_by_id(self, model_id: str) -> None:
        if model_id == self.selected_model_id and self.status == ModelStatus.READY:
            await self.remove_model()
            return

        await self._remove_artifact(model_id)
        if self._token.alive and model_id == self.selected_model_id:
            self.selected_model_id = None
            self._reset()

    async def release(self) -> None:
        """Unload the handle at session teardown; the artifact stays on device."""
        handle = self._handle
        self._reset()
        if handle is not None:
            await self._unload(handle)

    def _activate(self, model: LanguageModel) -> None:
        self._handle = model
        self.selected_model_id = model.model_id
        self.status = ModelStatus.READY
        logger.info("model_ready", model_id=model.model_id)
        if self._on_model_ready:
            self._on_model_ready(model)

    def _reset(self) -> None:
        self._handle = None
        self.status = ModelStatus.NOT_SETUP
        self.download_progress = 0.0

    def _record_progress(self, percentage: float) -> None:
        if self._token.alive:
            self.download_progress = float(percentage)
            logger.debug("model_download_progress", percentage=self.download_progress)

    async def _release_previous(self, model_id: str, handle: Optional[LanguageModel]) -> None:
        if handle is not None:
            await self._unload(handle)
        await self._remove_artifact(model_id)
        logger.info("previous_model_released", model_id=model_id)

    async def _unload(self, handle: LanguageModel) -> None:
        try:
            await handle.unload()
        except Exception as e:
            logger.warning("model_unload_failed", model_id=handle.model_id, error=str(e))

    async def _remove_artifact(self, model_id: str) -> None:
        try:
            await self._engine.language_model(model_id).remove()
        except Exception as e:
            logger.warning("model_artifact_removal_failed", model_id=model_id, error=str(e))

    def _alert(self, title: str, message: str) -> None:
        if self._on_alert:
            self._on_alert(Alert(title=title, message=message))
