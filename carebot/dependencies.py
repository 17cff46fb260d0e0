from functools import lru_cache
from carebot.services.domain_client import DomainClient
from carebot.services.intent_classifier import HttpIntentClassifier
from carebot.services.mailer import Mailer
from carebot.services.messenger import Messenger

# Collaborators are process-wide and hold no per-conversation state.
# Tests swap them through app.dependency_overrides.

@lru_cache()
def get_domain_client() -> DomainClient:
    return DomainClient()

@lru_cache()
def get_mailer() -> Mailer:
    return Mailer()

@lru_cache()
def get_classifier() -> HttpIntentClassifier:
    return HttpIntentClassifier()

@lru_cache()
def get_messenger() -> Messenger:
    return Messenger()
