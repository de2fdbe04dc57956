"""Authoritative game state for one table of players.

`GameSession` is the only writer of game state. Every public command either
applies completely or leaves the state untouched; commands never raise on
bad input from clients. One-shot notifications and timer requests are queued
on the session and drained by the transport layer after each command.
"""
import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

import config
from banking import BankingLadder
from question_bank import Question, QuestionProvider
from shootout import FinalDuel
from turns import NO_ACTOR, TurnTracker
from voting import VotingBox

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    WAITING = "waiting"
    QUESTIONS = "questions"
    TIMES_UP = "times_up"
    VOTING = "voting"
    ELIMINATION = "elimination"
    FINAL_INTRO = "final_intro"
    PENALTY = "penalty"
    FINAL_RESULT = "final_result"


class PlayerStatus(str, Enum):
    ACTIVE = "active"          # connection bound
    DETACHED = "detached"      # still playing, no connection
    ELIMINATED = "eliminated"


class Registration(str, Enum):
    JOINED = "joined"
    REJOINED = "rejoined"
    UNKNOWN = "unknown"
    DENIED_STARTED = "denied_started"
    DENIED_ELIMINATED = "denied_eliminated"
    INVALID_NAME = "invalid_name"


class Effect(str, Enum):
    START_COUNTDOWN = "start_countdown"
    STOP_COUNTDOWN = "stop_countdown"
    SCHEDULE_INTRO = "schedule_intro"
    CANCEL_INTRO = "cancel_intro"


# Phases the moderator may move to from each phase. Requesting PENALTY
# enters FINAL_INTRO first; the intro delay then enters PENALTY.
MODERATOR_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.WAITING: frozenset({Phase.QUESTIONS, Phase.VOTING, Phase.PENALTY}),
    Phase.QUESTIONS: frozenset({Phase.TIMES_UP, Phase.VOTING, Phase.WAITING}),
    Phase.TIMES_UP: frozenset({Phase.QUESTIONS, Phase.VOTING, Phase.WAITING}),
    Phase.VOTING: frozenset({Phase.ELIMINATION, Phase.QUESTIONS, Phase.WAITING}),
    Phase.ELIMINATION: frozenset({Phase.VOTING, Phase.WAITING, Phase.PENALTY}),
    Phase.FINAL_INTRO: frozenset({Phase.WAITING}),
    Phase.PENALTY: frozenset({Phase.FINAL_RESULT, Phase.WAITING}),
    Phase.FINAL_RESULT: frozenset({Phase.WAITING}),
}

# Self-transitions: countdown expiry and the finale intro delay
AUTOMATIC_TRANSITIONS: Dict[Phase, Phase] = {
    Phase.QUESTIONS: Phase.TIMES_UP,
    Phase.FINAL_INTRO: Phase.PENALTY,
}

FINALE_PHASES: FrozenSet[Phase] = frozenset({Phase.FINAL_INTRO, Phase.PENALTY, Phase.FINAL_RESULT})

# Phases in which each in-game command is accepted
COMMAND_PHASES: Dict[str, FrozenSet[Phase]] = {
    "judge": frozenset({Phase.QUESTIONS, Phase.PENALTY}),
    "bank": frozenset({Phase.QUESTIONS}),
    "vote": frozenset({Phase.VOTING}),
    "eliminate": frozenset({Phase.WAITING, Phase.QUESTIONS, Phase.TIMES_UP, Phase.VOTING, Phase.ELIMINATION}),
}


def normalize_name(raw) -> str:
    """Player identity: trimmed, upper-cased, control characters removed."""
    if not isinstance(raw, str):
        return ""
    name = re.sub(r'<[^>]+>', '', raw)
    name = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', name)
    return name.strip().upper()


def parse_phase(value) -> Optional[Phase]:
    try:
        return Phase(value)
    except ValueError:
        return None


@dataclass
class Player:
    name: str
    correct: int = 0
    wrong: int = 0
    bank_amount: int = 0
    bank_count: int = 0
    status: PlayerStatus = PlayerStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "correct": self.correct,
            "wrong": self.wrong,
            "bank_amount": self.bank_amount,
            "bank_count": self.bank_count,
            "connected": self.status == PlayerStatus.ACTIVE,
        }


class GameSession:
    def __init__(self, provider: Optional[QuestionProvider] = None, chain: Optional[List[int]] = None):
        self.provider = provider or QuestionProvider()
        self.chain = list(chain or config.CHAIN_VALUES)
        self.events: List[dict] = []
        self.effects: List[Effect] = []
        self._init_state()

    def _init_state(self):
        self.players: Dict[str, Player] = {}  # registration order
        self.turns = TurnTracker()
        self.ladder = BankingLadder(self.chain)
        self.votes = VotingBox()
        self.round = 1
        self.phase = Phase.WAITING
        self.started = False  # sticky once play has begun
        self.timer = config.round_duration(1)
        self.current_question: Optional[Question] = None
        self.final: Optional[FinalDuel] = None
        self.provider.reset()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def roster(self) -> List[str]:
        """Names still in the game, in registration order."""
        return [p.name for p in self.players.values() if p.status != PlayerStatus.ELIMINATED]

    @property
    def has_started(self) -> bool:
        """True from the first phase entered after the lobby until reset."""
        return self.started

    def correct_counts(self) -> Dict[str, int]:
        return {name: p.correct for name, p in self.players.items()}

    def current_player(self) -> str:
        if self.phase in (Phase.FINAL_INTRO, Phase.PENALTY) and self.final:
            return self.final.shooter.name
        return self.turns.current()

    def ranking(self) -> List[dict]:
        return [self.players[name].to_dict() for name in self.roster]

    def voting_summary(self) -> dict:
        return {"summary": self.votes.tally(), "details": self.votes.details()}

    def state_messages(self, reveal_answer: bool = False) -> List[dict]:
        """Full current sub-state, one message per concern.

        Every message carries the whole sub-state so a client that missed
        earlier broadcasts is consistent after the next one.
        """
        result = self.votes.result
        messages = [
            {"type": "PHASE_CHANGED", "phase": self.phase.value},
            {"type": "ROUND_UPDATE", "round": self.round},
            {"type": "BANK_STATE", **self.ladder.snapshot()},
            {"type": "TURN_UPDATE", "player": self.current_player()},
            {"type": "PLAYERS_UPDATED", "players": self.roster},
            {"type": "RANKING_UPDATE", "ranking": self.ranking()},
            {"type": "TIMER", "remaining": self.timer},
            {"type": "VOTES_UPDATED", **self.voting_summary()},
            {"type": "VOTING_RESULT", "result": result.to_dict() if result else None},
        ]
        if self.final:
            messages.append({"type": "FINAL_STATE", "final": self.final.to_dict()})
        if self.phase in (Phase.QUESTIONS, Phase.PENALTY) and self.current_question:
            question = self.current_question.to_dict() if reveal_answer else self.current_question.public()
            messages.append({"type": "QUESTION_UPDATE", "question": question})
        return messages

    def snapshot(self, reveal_answer: bool = False) -> dict:
        result = self.votes.result
        question = None
        if self.current_question:
            question = self.current_question.to_dict() if reveal_answer else self.current_question.public()
        return {
            "phase": self.phase.value,
            "round": self.round,
            "bank": self.ladder.snapshot(),
            "turn": self.current_player(),
            "players": self.roster,
            "ranking": self.ranking(),
            "timer": self.timer,
            "votes": self.voting_summary(),
            "voting_result": result.to_dict() if result else None,
            "final": self.final.to_dict() if self.final else None,
            "question": question,
        }

    def drain(self) -> Tuple[List[dict], List[Effect]]:
        events, effects = self.events, self.effects
        self.events, self.effects = [], []
        return events, effects

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def register(self, raw_name, allow_new: bool = True) -> Tuple[Registration, str]:
        name = normalize_name(raw_name)
        if not name or len(name) > config.MAX_NICKNAME_LENGTH:
            return Registration.INVALID_NAME, name

        player = self.players.get(name)
        if player:
            if player.status == PlayerStatus.ELIMINATED:
                logger.info("Eliminated player '%s' tried to rejoin", name)
                return Registration.DENIED_ELIMINATED, name
            if player.status == PlayerStatus.DETACHED:
                self.events.append({"type": "PLAYER_RECONNECTED", "name": name})
            player.status = PlayerStatus.ACTIVE
            logger.info("Player '%s' rejoined (phase %s)", name, self.phase.value)
            return Registration.REJOINED, name

        if not allow_new:
            return Registration.UNKNOWN, name
        if self.has_started:
            logger.info("Late join from '%s' refused, game already started", name)
            return Registration.DENIED_STARTED, name

        self.players[name] = Player(name)
        self.turns.add(name)
        logger.info("Player '%s' joined (%d players)", name, len(self.players))
        return Registration.JOINED, name

    def detach(self, name: str):
        """A player's connection went away.

        Before the game starts the player simply leaves; afterwards they stay
        in the game, keep their turn position and may rejoin under the same
        name.
        """
        player = self.players.get(name)
        if not player or player.status != PlayerStatus.ACTIVE:
            return
        if not self.has_started:
            del self.players[name]
            self.turns.remove(name)
            self.events.append({"type": "PLAYER_LEFT", "name": name})
            logger.info("Player '%s' left the lobby", name)
        else:
            player.status = PlayerStatus.DETACHED
            self.events.append({"type": "PLAYER_DISCONNECTED", "name": name})
            logger.info("Player '%s' disconnected (kept in game)", name)

    # ------------------------------------------------------------------
    # Phase machine
    # ------------------------------------------------------------------

    def _draw_question(self):
        self.current_question = self.provider.next()

    def _enter(self, phase: Phase):
        previous = self.phase
        self.phase = phase
        if phase != Phase.WAITING:
            self.started = True
        elif previous in FINALE_PHASES and self.final:
            # The duel is not carried over into a new lobby
            self.final = None
        if previous == Phase.FINAL_INTRO and phase != Phase.PENALTY:
            self.effects.append(Effect.CANCEL_INTRO)

        if phase == Phase.QUESTIONS:
            self.ladder.start_round()
            self._draw_question()
            self.timer = config.round_duration(self.round)
            self.effects.append(Effect.START_COUNTDOWN)
            return
        if phase == Phase.VOTING:
            self.ladder.clear_chain()
            self.votes.reset()
        self.effects.append(Effect.STOP_COUNTDOWN)

    def _start_final(self) -> bool:
        roster = self.roster
        if len(roster) < 2:
            logger.warning("Finale needs two players, have %d", len(roster))
            return False
        self.final = FinalDuel(roster[0], roster[1])
        self._enter(Phase.FINAL_INTRO)
        self.effects.append(Effect.SCHEDULE_INTRO)
        logger.info("Finale: %s vs %s", roster[0], roster[1])
        return True

    def set_phase(self, requested) -> bool:
        phase = parse_phase(requested)
        if phase is None:
            logger.warning("Unknown phase %r ignored", requested)
            return False
        if phase not in MODERATOR_TRANSITIONS[self.phase]:
            logger.info("Transition %s -> %s not allowed", self.phase.value, phase.value)
            return False
        if phase == Phase.PENALTY:
            return self._start_final()
        if phase == Phase.FINAL_RESULT and not (self.final and self.final.winner):
            logger.info("No finale winner yet, staying in %s", self.phase.value)
            return False
        logger.info("Phase %s -> %s", self.phase.value, phase.value)
        self._enter(phase)
        return True

    def finish_intro(self) -> bool:
        """Fixed-delay self-transition from the finale intro into the shootout."""
        if self.phase != Phase.FINAL_INTRO or self.final is None:
            return False
        self.phase = AUTOMATIC_TRANSITIONS[Phase.FINAL_INTRO]
        self._draw_question()
        return True

    def tick(self) -> bool:
        """Advance the countdown one second. Returns False once it has stopped."""
        if self.phase != Phase.QUESTIONS:
            return False
        self.timer = max(0, self.timer - 1)
        if self.timer > 0:
            return True
        logger.info("Time is up for round %d", self.round)
        self._enter(AUTOMATIC_TRANSITIONS[Phase.QUESTIONS])
        return False

    # ------------------------------------------------------------------
    # In-game commands
    # ------------------------------------------------------------------

    def _credit_bank(self, player_name: str, event):
        player = self.players.get(player_name)
        if player:
            player.bank_amount += event.amount
            player.bank_count += 1
        self.events.append({
            "type": "BANK_SUCCESS",
            "player": player_name,
            "amount": event.amount,
            "auto": event.auto,
        })

    def judge_answer(self, is_correct: bool) -> bool:
        if self.phase not in COMMAND_PHASES["judge"]:
            return False
        if self.phase == Phase.PENALTY:
            return self._judge_penalty(is_correct)

        name = self.turns.current()
        player = self.players.get(name)
        if is_correct:
            if player:
                player.correct += 1
            event = self.ladder.on_correct()
            if event:
                self._credit_bank(name, event)
        else:
            if player:
                player.wrong += 1
            self.ladder.on_wrong()
        self._draw_question()
        self.turns.advance()
        return True

    def _judge_penalty(self, made: bool) -> bool:
        if not self.final or not self.final.record(made):
            return False
        if self.final.winner:
            logger.info("Finale won by %s with %d banked", self.final.winner, self.ladder.total)
            self.events.append({
                "type": "FINAL_WINNER",
                "name": self.final.winner,
                "amount": self.ladder.total,
            })
        else:
            self._draw_question()
        return True

    def manual_bank(self, requested_by: Optional[str] = None) -> bool:
        """Bank the ladder for the acting player.

        `requested_by` is the caller's identity for player-sent requests; only
        the player whose turn it is may bank. None means the moderator.
        """
        if self.phase not in COMMAND_PHASES["bank"]:
            return False
        actor = self.turns.current()
        if requested_by is not None and requested_by != actor:
            logger.info("'%s' tried to bank on %s's turn", requested_by, actor)
            return False
        event = self.ladder.on_manual_bank()
        if not event:
            return False
        self._credit_bank(actor, event)
        return True

    def cast_vote(self, voter: str, raw_target) -> bool:
        if self.phase not in COMMAND_PHASES["vote"] or self.votes.result:
            return False
        roster = self.roster
        if not self.votes.cast(voter, normalize_name(raw_target), roster):
            return False
        result = self.votes.resolve(roster, self.correct_counts())
        if result:
            self.votes.result = result
            logger.info("Voting resolved: %s", result.to_dict())
        return True

    def eliminate(self, raw_name) -> bool:
        name = normalize_name(raw_name)
        if self.phase not in COMMAND_PHASES["eliminate"] or name not in self.roster:
            return False
        self.players[name].status = PlayerStatus.ELIMINATED
        self.started = True
        self.turns.remove(name)
        self.turns.rederive(self.correct_counts())
        self.votes.reset()
        self.round += 1
        self._enter(Phase.WAITING)
        self.events.append({"type": "PLAYER_ELIMINATED", "name": name})
        logger.info("Player '%s' eliminated, round %d, %d left", name, self.round, len(self.roster))
        return True

    def reset(self):
        self._init_state()
        self.effects.extend([Effect.STOP_COUNTDOWN, Effect.CANCEL_INTRO])
        self.events.append({"type": "GAME_RESET"})
        logger.info("Game reset")

    def replace_questions(self, catalog: List[Question]) -> bool:
        """Swap in a new question catalog. Only possible before the game starts."""
        if self.has_started:
            return False
        self.provider = QuestionProvider(catalog, self.provider.rng)
        logger.info("Question catalog replaced (%d questions)", len(catalog))
        return True
