from .persistence import NpzModelPersistence
