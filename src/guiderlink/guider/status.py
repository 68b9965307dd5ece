"""
Guider state as reconstructed from the guider's unsolicited event stream.

The guider announces state changes (AppState, StartGuiding, GuideStep, SettleDone...)
as event notifications on the same connection used for calls. GuiderEventTracker folds
those events into a current view that GuiderStatus snapshots.
"""
import logging
import math
import threading
import time

from guiderlink.support.mixins import ValueObject

logger = logging.getLogger(__name__)

# states in which the guider is actively guiding, or trying to recover a lost star
GUIDING_STATES = ('Guiding', 'LostLock')


class GuideStats(ValueObject):
    """ rms and peak guide error, per axis, in pixels. """

    def __init__(self, rms_total=0.0, rms_ra=0.0, rms_dec=0.0, peak_ra=0.0, peak_dec=0.0):
        self.rms_total = rms_total
        self.rms_ra = rms_ra
        self.rms_dec = rms_dec
        self.peak_ra = peak_ra
        self.peak_dec = peak_dec


class SettleProgress(ValueObject):
    def __init__(self, done=False, distance=0.0, settle_px=0.0, time=0.0, settle_time=0.0, status=0,
                 error=None):
        self.done = done
        self.distance = distance
        self.settle_px = settle_px
        self.time = time
        self.settle_time = settle_time
        self.status = status
        self.error = error


class StarLostInfo(ValueObject):
    def __init__(self, frame=0, time=0.0, star_mass=0.0, snr=0.0, avg_dist=0.0, error_code=0, status=None,
                 timestamp=None):
        self.frame = frame
        self.time = time
        self.star_mass = star_mass
        self.snr = snr
        self.avg_dist = avg_dist
        self.error_code = error_code
        self.status = status
        self.timestamp = timestamp


class GuideStarInfo(ValueObject):
    """ the most recent measurements of the guide star. last_update is a unix timestamp. """

    def __init__(self, snr=0.0, hfd=0.0, star_mass=0.0, last_update=None):
        self.snr = snr
        self.hfd = hfd
        self.star_mass = star_mass
        self.last_update = last_update


class StarImage(ValueObject):
    """ a cutout around the guide star. pixels holds base64 encoded 16-bit pixel data. """

    def __init__(self, frame, width, height, star_pos, pixels):
        self.frame = frame
        self.width = width
        self.height = height
        self.star_pos = star_pos
        self.pixels = pixels

    @classmethod
    def from_result(cls, result: dict):
        star_pos = result.get('star_pos') or [0.0, 0.0]
        return cls(result.get('frame'), result.get('width'), result.get('height'),
                   (float(star_pos[0]), float(star_pos[1])), result.get('pixels'))


class GuiderStatus(ValueObject):
    def __init__(self, app_state, avg_dist=0.0, stats=None, version=None, subversion=None, connected=False,
                 guiding=False, settling=False, settle_progress=None, last_star_lost=None, current_star=None,
                 error=None):
        self.app_state = app_state
        self.avg_dist = avg_dist
        self.stats = stats if stats is not None else GuideStats()
        self.version = version
        self.subversion = subversion
        self.connected = connected
        self.guiding = guiding
        self.settling = settling
        self.settle_progress = settle_progress
        self.last_star_lost = last_star_lost
        self.current_star = current_star
        self.error = error

    @classmethod
    def disconnected(cls, error=None):
        """
        The status reported when there is no guider connection.
        >>> GuiderStatus.disconnected().app_state
        'Disconnected'
        """
        return cls('Disconnected' if error is None else 'Error', error=error)


class Accumulator:
    """ collects samples of one axis' guide error. """

    def __init__(self):
        self.values = []

    def add(self, value):
        self.values.append(value)

    def reset(self):
        self.values = []

    def stdev(self):
        """
        The sample standard deviation. 0 with fewer than two samples.
        >>> a = Accumulator()
        >>> for v in (1.0, -1.0, 1.0, -1.0): a.add(v)
        >>> round(a.stdev(), 6)
        1.154701
        """
        n = len(self.values)
        if n < 2:
            return 0.0
        mean = sum(self.values) / n
        variance = sum((v - mean) ** 2 for v in self.values) / (n - 1)
        return math.sqrt(max(0.0, variance))

    def peak(self):
        return max((abs(v) for v in self.values), default=0.0)


class GuiderEventTracker:
    """
    Maintains the guider state from its event notifications.

    Statistics are accumulated from GuideStep events once guiding starts. Accumulation is
    reset by StartGuiding, and suspended between SettleBegin and SettleDone so that the
    deliberate offsets of a dither do not count as guide error.

    Events are delivered on the client's reader thread, while status and settle queries
    arrive on caller threads, so all state is guarded by one lock.
    """

    def __init__(self, clock=time.time, log=logger):
        self._lock = threading.Lock()
        self._clock = clock
        self.logger = log
        self.app_state = 'Stopped'
        self.avg_dist = 0.0
        self.stats = GuideStats()
        self.version = None
        self.subversion = None
        self.last_star_lost = None
        self.current_star = GuideStarInfo()
        self._accum_ra = Accumulator()
        self._accum_dec = Accumulator()
        self._accum_active = False
        self._settle = None
        self.settle_px = 0.0
        self._handlers = {
            'AppState': self._app_state,
            'Version': self._version,
            'StartGuiding': self._start_guiding,
            'GuideStep': self._guide_step,
            'GuidingStopped': self._guiding_stopped,
            'Paused': self._paused,
            'StarLost': self._star_lost,
            'SettleBegin': self._settle_begin,
            'Settling': self._settling,
            'SettleDone': self._settle_done,
        }

    def __call__(self, event):
        self.handle(event)

    def handle(self, event):
        """ applies one GuiderEvent. Events of other types are ignored. """
        handler = self._handlers.get(event.name)
        if handler is None:
            return
        try:
            with self._lock:
                handler(event.attributes)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.warning("malformed %s event from guider: %s", event.name, e)

    def _app_state(self, e):
        self.app_state = e['State']

    def _version(self, e):
        self.version = e.get('PHDVersion')
        self.subversion = e.get('PHDSubver')

    def _start_guiding(self, e):
        self.app_state = 'Guiding'
        self._accum_ra.reset()
        self._accum_dec.reset()
        self._accum_active = True

    def _guide_step(self, e):
        if self._accum_active:
            self._accum_ra.add(float(e['RADistanceRaw']))
            self._accum_dec.add(float(e['DECDistanceRaw']))
            self.stats = self._accumulated_stats()
        self.app_state = 'Guiding'
        self.avg_dist = float(e.get('AvgDist', self.avg_dist))
        star = self.current_star
        self.current_star = GuideStarInfo(float(e.get('SNR', star.snr)), float(e.get('HFD', star.hfd)),
                                          float(e.get('StarMass', star.star_mass)), self._clock())

    def _guiding_stopped(self, e):
        self.app_state = 'Stopped'

    def _paused(self, e):
        self.app_state = 'Paused'

    def _star_lost(self, e):
        self.app_state = 'LostLock'
        self.avg_dist = float(e.get('AvgDist', 0.0))
        self.last_star_lost = StarLostInfo(e.get('Frame', 0), e.get('Time', 0.0), e.get('StarMass', 0.0),
                                           e.get('SNR', 0.0), self.avg_dist, e.get('ErrorCode', 0),
                                           e.get('Status'), self._clock())

    def _settle_begin(self, e):
        self._accum_active = False

    def _settling(self, e):
        self._settle = SettleProgress(False, float(e['Distance']), self.settle_px, float(e['Time']),
                                      float(e['SettleTime']))

    def _settle_done(self, e):
        self._settle = SettleProgress(True, status=e.get('Status', 0), error=e.get('Error') or None)
        self._accum_active = True

    def _accumulated_stats(self):
        rms_ra = self._accum_ra.stdev()
        rms_dec = self._accum_dec.stdev()
        return GuideStats(math.hypot(rms_ra, rms_dec), rms_ra, rms_dec, self._accum_ra.peak(),
                          self._accum_dec.peak())

    def settle_started(self, settle_px):
        """ records the settle threshold of a guide or dither command that was just accepted. """
        with self._lock:
            self.settle_px = settle_px

    def clear_settle(self):
        with self._lock:
            self._settle = None

    @property
    def settling(self):
        with self._lock:
            return self._settle is not None

    def begin_settling(self):
        """ marks settling in progress, when the guider reports it but no event has been seen yet. """
        with self._lock:
            if self._settle is None:
                self._settle = SettleProgress(False, distance=-1.0)

    def take_settle_progress(self):
        """
        Retrieves the settle progress. A finished settle is reported once, then cleared.
        :return: the SettleProgress, or None if not settling.
        """
        with self._lock:
            settle = self._settle
            if settle is None:
                return None
            if settle.done:
                self._settle = None
                return SettleProgress(True, status=settle.status, error=settle.error)
            return SettleProgress(False, settle.distance, self.settle_px, settle.time, settle.settle_time)

    def snapshot(self, connected=True) -> GuiderStatus:
        with self._lock:
            star = self.current_star
            return GuiderStatus(self.app_state, self.avg_dist, GuideStats(**self.stats.__dict__), self.version,
                                self.subversion, connected, self.app_state in GUIDING_STATES,
                                self._settle is not None, self._settle, self.last_star_lost,
                                GuideStarInfo(star.snr, star.hfd, star.star_mass, star.last_update))
