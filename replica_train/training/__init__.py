from .scheduler import GradientNormTracker
from .scheduler import TrainingScheduler
