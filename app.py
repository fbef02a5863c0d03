import asyncio
from typing import List, Tuple

from nicegui import ui, app

from config import HydrationConfig
from fill_estimator import EstimationError, RateLimitedError, to_data_url
from hydration_session import HydrationSession
from hydration_state import BOTTLE_SHAPES, SNAP_MODES, bottles_left, max_bottles, percent_of_goal
from notification_service import LocalNotificationService
from pacing import format_bottles, recommend_goal_ml
from persistent_storage import PersistentStorage
from time_service import TimeService, format_countdown

QUICK_ADD_ML = (250, 330, 500, 750)


def minutes_to_hhmm(minutes: int) -> str:
    minutes = int(minutes) % 1440
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_hhmm(text: str) -> int:
    hours, _, mins = (text or '').strip().partition(':')
    value = int(hours) * 60 + int(mins or 0)
    if not 0 <= value < 1440:
        raise ValueError(f"Not a time of day: {text}")
    return value


class HydrationApp:
    def __init__(self):
        self.config = HydrationConfig.from_env()
        self.time_service = TimeService()
        self.toast_queue: List[Tuple[str, str]] = []
        self.notifier = LocalNotificationService(self.time_service, deliver=self._queue_toast)
        self.session = HydrationSession(
            config=self.config,
            storage=PersistentStorage(self.config.data_dir),
            time_service=self.time_service,
            notifier=self.notifier,
        )

        # Reactive data bound to labels
        self.ui_data = {
            'progress_display': '',
            'bottle_display': '',
            'pacing_display': '',
            'rollover_display': '',
            'score_display': '',
            'scan_display': '',
        }
        self.celebration_dialog = None
        self.morning_dialog = None
        self.fill_slider = None

    def _queue_toast(self, title: str, body: str):
        # Delivered from a background task; shown on the next UI refresh
        self.toast_queue.append((title, body))
        print(f"🔔 {title}: {body}")

    def _show_toast(self, message: str, type_: str = 'info'):
        """Show a toast notification - safe for background tasks"""
        try:
            ui.notify(message, type=type_, position='top-right', timeout=5000, close_button=True)
        except RuntimeError as e:
            if "slot stack" in str(e):
                print(f"TOAST [{type_.upper()}]: {message}")
            else:
                raise

    def _update_ui_data(self):
        """Refresh the reactive data; bound UI elements follow automatically"""
        session = self.session
        session.check_rollover()
        state = session.state
        consumed = session.total_consumed()
        pct = percent_of_goal(state, consumed)
        self.ui_data['progress_display'] = (
            f'{consumed} / {state.goal_ml} ml ({pct}%) | '
            f'{format_bottles(state.goal_ml, state.bottle_ml)} bottles goal, '
            f'{bottles_left(state):.1f} left'
        )
        self.ui_data['bottle_display'] = (
            f'Bottle {min(state.completed_bottles + 1, max_bottles(state))} of {max_bottles(state)} | '
            f'{round(session.pending_remaining * 100)}% full'
        )

        pacing = session.pacing()
        status_emoji = '🟢' if pacing.status == 'ahead' else '🟠'
        self.ui_data['pacing_display'] = (
            f'{status_emoji} {pacing.status.capitalize()} | expected {pacing.expected_ml} ml '
            f'({pacing.diff_ml:+d} ml) | target line {round(pacing.target_line * 100)}%'
        )
        self.ui_data['rollover_display'] = f'⏰ New day in {format_countdown(session.time_until_rollover())}'

        report = session.consistency()
        self.ui_data['score_display'] = (
            f'{report.tier} ({report.tier_label}) | score {report.score}/100 | '
            + ' '.join(str(day.daily_score) for day in report.days)
        )
        cooldown = session.scanner.cooldown_remaining()
        self.ui_data['scan_display'] = (
            f'Scanner cooling down ({cooldown:.0f}s)' if cooldown > 0 else f'Scanner: {session.scanner.status}'
        )

        while self.toast_queue:
            title, body = self.toast_queue.pop(0)
            self._show_toast(f'{title} {body}', 'positive')

        if self.fill_slider is not None and self.fill_slider.value != session.pending_remaining:
            self.fill_slider.value = session.pending_remaining
        if self.celebration_dialog is not None:
            if state.celebrate is not None and not self.celebration_dialog.value:
                self._open_celebration()

    def _open_celebration(self):
        celebrate = self.session.state.celebrate
        self.celebration_label.text = (
            'You hit your water intake for the day.' if celebrate.type == 'goal'
            else f"You've drunk {celebrate.pct}% of your water intake today."
        )
        self.celebration_detail.text = f'{celebrate.consumed_ml} / {self.session.state.goal_ml} ml'
        self.celebration_dialog.open()

    def on_slider_change(self, e):
        self.session.set_pending(e.args if isinstance(e.args, (int, float)) else self.fill_slider.value)

    def on_track(self):
        self.session.track(self.fill_slider.value)
        self._update_ui_data()

    def on_refill(self):
        self.session.refill(self.fill_slider.value)
        self._update_ui_data()

    def on_quick_add(self, ml: int):
        self.session.add_extra(ml)
        self._show_toast(f'💧 Added {ml} ml')
        self._update_ui_data()

    def on_undo(self):
        if self.session.undo() is None:
            self._show_toast('Nothing to undo', 'warning')
        self._update_ui_data()

    def on_dismiss_celebration(self):
        self.session.dismiss_celebration()
        self.celebration_dialog.close()
        self._update_ui_data()

    def on_morning_refill(self):
        self.session.morning_refill()
        self.morning_dialog.close()
        self._update_ui_data()

    async def on_upload(self, e):
        try:
            image_data_url = to_data_url(e.content.read(), e.type, e.name)
            fraction = await self.session.estimate_fill(image_data_url)
            if fraction is not None:
                self._show_toast(f'📷 Bottle looks {round(fraction * 100)}% full', 'positive')
        except RateLimitedError as err:
            self._show_toast(f'Too many scans, try again in {round((err.retry_after_ms or 0) / 1000)}s', 'warning')
        except EstimationError as err:
            self._show_toast(f'❌ {err}', 'negative')
        self._update_ui_data()

    def on_save_settings(self):
        try:
            self.session.update_schedule(parse_hhmm(self.wake_input.value), parse_hhmm(self.sleep_input.value))
            self.session.update_goal(int(self.goal_input.value))
            state = self.session.state
            patch = {}
            if int(self.bottle_input.value) != state.bottle_ml:
                patch['bottle_ml'] = int(self.bottle_input.value)
            if self.shape_select.value != state.shape:
                patch['shape'] = self.shape_select.value
            if self.snap_select.value != state.snap:
                patch['snap'] = self.snap_select.value
            if patch:
                self.session.switch_bottle(**patch)
            self._show_toast('✅ Settings saved', 'positive')
        except (TypeError, ValueError) as err:
            self._show_toast(f'❌ {err}', 'negative')
        self._update_ui_data()

    def on_recommend(self):
        try:
            rec = recommend_goal_ml(float(self.weight_input.value), self.activity_select.value, self.warm_switch.value)
        except (TypeError, ValueError):
            self._show_toast('Enter your weight first', 'warning')
            return
        self.goal_input.value = rec.ml
        self._show_toast(f'Recommended {rec.ml} ml (range {rec.low}-{rec.high} ml)')

    def on_reset_all(self):
        self.session.reset_all()
        self._show_toast('🔄 All data reset', 'warning')
        self._update_ui_data()

    async def check_morning_reset(self):
        if await self.session.on_foreground() and self.morning_dialog is not None:
            self.morning_dialog.open()

    def create_ui(self):
        """Create the main UI"""
        state = self.session.state
        ui.page_title('OneBottle')

        with ui.card().classes('w-full max-w-3xl mx-auto p-6'):
            ui.label('💧 OneBottle').classes('text-3xl font-bold text-center mb-6')

            with ui.card().classes('mb-4 p-4 w-full'):
                ui.label('🍶 Your bottle').classes('text-xl font-semibold mb-4')
                ui.label().classes('text-lg font-mono').bind_text_from(self.ui_data, 'bottle_display')
                self.fill_slider = ui.slider(min=0, max=1, step=0.01, value=self.session.pending_remaining) \
                    .props('label-always').classes('mb-4')
                self.fill_slider.on('update:model-value', self.on_slider_change)

                with ui.row().classes('w-full gap-2'):
                    ui.button('Track', on_click=self.on_track).classes('flex-1 bg-blue-500')
                    ui.button('Refill', on_click=self.on_refill).classes('flex-1 bg-green-500')
                    ui.button('Undo', on_click=self.on_undo).classes('flex-1 bg-gray-400')

                ui.label('Quick add').classes('font-medium text-gray-700 mt-4 mb-2')
                with ui.row().classes('w-full gap-2'):
                    for ml in QUICK_ADD_ML:
                        ui.button(f'+{ml} ml', on_click=lambda ml=ml: self.on_quick_add(ml)).props('outline')

                ui.upload(label='📷 Scan bottle photo', auto_upload=True, on_upload=self.on_upload) \
                    .props('accept=image/*').classes('w-full mt-4')
                ui.label().classes('text-xs text-gray-500').bind_text_from(self.ui_data, 'scan_display')

            with ui.card().classes('mb-4 p-4 w-full'):
                ui.label('📊 Today').classes('text-xl font-semibold mb-4')
                ui.label().classes('text-lg').bind_text_from(self.ui_data, 'progress_display')
                ui.label().classes('text-md').bind_text_from(self.ui_data, 'pacing_display')
                ui.label().classes('text-sm font-mono').bind_text_from(self.ui_data, 'rollover_display')

                with ui.expansion('🏅 Consistency', icon='analytics').classes('w-full mt-4'):
                    ui.label().classes('text-sm').bind_text_from(self.ui_data, 'score_display')

                with ui.expansion('⚙️ Settings', icon='settings').classes('w-full mt-4'):
                    self.goal_input = ui.number('Daily goal (ml)', value=state.goal_ml, min=1, step=50)
                    self.bottle_input = ui.number('Bottle size (ml)', value=state.bottle_ml, min=1, step=10)
                    self.shape_select = ui.select(list(BOTTLE_SHAPES), value=state.shape, label='Bottle shape')
                    self.snap_select = ui.select(list(SNAP_MODES), value=state.snap, label='Fill snapping')
                    self.wake_input = ui.input('Wake time (HH:MM)', value=minutes_to_hhmm(state.wake_mins))
                    self.sleep_input = ui.input('Sleep time (HH:MM)', value=minutes_to_hhmm(state.sleep_mins))
                    ui.button('Save settings', on_click=self.on_save_settings).classes('w-full mt-2')

                    ui.label('Goal recommendation').classes('font-medium text-gray-700 mt-4')
                    self.weight_input = ui.number('Weight (kg)', min=30, step=1)
                    self.activity_select = ui.select(['low', 'moderate', 'high'], value='moderate', label='Activity')
                    self.warm_switch = ui.switch('Warm climate')
                    ui.button('Recommend goal', on_click=self.on_recommend).props('outline').classes('w-full')

                with ui.expansion('🔄 Reset Options', icon='refresh').classes('w-full mt-4'):
                    ui.button('Reset all data', on_click=self.on_reset_all).classes('w-full bg-red-600')

        with ui.dialog() as self.celebration_dialog, ui.card():
            ui.label('🎉 Nice work').classes('text-2xl font-extrabold')
            self.celebration_label = ui.label()
            self.celebration_detail = ui.label().classes('text-sm text-gray-500')
            ui.button('Done', on_click=self.on_dismiss_celebration)

        with ui.dialog().props('persistent') as self.morning_dialog, ui.card():
            ui.label('🌞 Good morning').classes('text-2xl font-extrabold')
            ui.label('Refill your bottle and we\'ll track from here.')
            ui.button('I refilled my bottle', on_click=self.on_morning_refill)

        self._update_ui_data()
        ui.timer(1.0, callback=self._update_ui_data)
        asyncio.create_task(self.check_morning_reset())


# Global app instance
hydration_app = HydrationApp()


@ui.page('/')
async def index():
    hydration_app.create_ui()


async def on_startup():
    """App startup handler"""
    try:
        await hydration_app.session.start()
    except Exception as e:
        print(f"Error starting session: {e}")


async def on_shutdown():
    """App shutdown handler"""
    try:
        await hydration_app.session.stop()
        await hydration_app.notifier.cancel_all()
        print("App shutdown complete")
    except Exception as e:
        print(f"Error during shutdown: {e}")


async def on_connect():
    await hydration_app.session.on_foreground()


def on_disconnect():
    hydration_app.session.on_background()


app.on_startup(on_startup)
app.on_shutdown(on_shutdown)
app.on_connect(on_connect)
app.on_disconnect(on_disconnect)

if __name__ in {"__main__", "__mp_main__"}:
    ui.run(
        title='OneBottle',
        port=hydration_app.config.app_port,
        show=True,
        reload=False
    )
