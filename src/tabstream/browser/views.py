"""Browser view models shared by the tab registry, tabs and screencast pipeline."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DialogType = Literal['alert', 'confirm', 'prompt', 'beforeunload']
WaitUntil = Literal['load', 'domcontentloaded']


class TabMeta(BaseModel):
    """Immutable metadata snapshot of one tab.

    Replaced as a whole on every sync, never mutated in place.
    """

    model_config = ConfigDict(frozen=True, extra='forbid')

    id: str
    title: str = 'Loading...'
    url: str = 'about:blank'
    favicon: str | None = None
    is_loading: bool = False
    is_active: bool = False


class TabsState(BaseModel):
    """Published tab state: tab metadata in insertion order plus the active tab id."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    tabs: dict[str, TabMeta] = Field(default_factory=dict)
    active_tab_id: str | None = None

    @property
    def active_tab(self) -> TabMeta | None:
        if self.active_tab_id is None:
            return None
        return self.tabs.get(self.active_tab_id)


class DialogMeta(BaseModel):
    """A JavaScript dialog currently open on a tab."""

    model_config = ConfigDict(frozen=True)

    type: DialogType | str
    message: str = ''
    default_value: str = ''


class ActionResponse(BaseModel):
    """Outcome of an input action that is refused while a dialog is open."""

    success: bool
    message: str | None = None
    detail: DialogMeta | None = None


class ScreencastOptions(BaseModel):
    """Options forwarded to Page.startScreencast."""

    format: Literal['jpeg', 'png'] = 'jpeg'
    quality: int = Field(default=80, ge=0, le=100, description='Compression quality, jpeg only')
    max_width: int = Field(default=1200, gt=0)
    max_height: int = Field(default=800, gt=0)
    every_nth_frame: int = Field(default=1, ge=1, description='Send every n-th frame')

    def to_cdp_params(self) -> dict[str, Any]:
        return {
            'format': self.format,
            'quality': self.quality,
            'maxWidth': self.max_width,
            'maxHeight': self.max_height,
            'everyNthFrame': self.every_nth_frame,
        }


class ScreencastFrameMetadata(BaseModel):
    """Metadata reported by the browser with each screencast frame."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    device_width: float = Field(alias='deviceWidth')
    device_height: float = Field(alias='deviceHeight')
    offset_top: float = Field(default=0, alias='offsetTop')
    page_scale_factor: float = Field(default=1, alias='pageScaleFactor')
    scroll_offset_x: float = Field(default=0, alias='scrollOffsetX')
    scroll_offset_y: float = Field(default=0, alias='scrollOffsetY')
    timestamp: float | None = None


class ScreencastFrame(BaseModel):
    """One inbound Page.screencastFrame message."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    data: str
    metadata: ScreencastFrameMetadata
    session_id: int = Field(alias='sessionId')

    @classmethod
    def from_cdp(cls, event: dict[str, Any]) -> 'ScreencastFrame':
        return cls.model_validate(event)
