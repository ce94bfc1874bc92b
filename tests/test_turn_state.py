from Services.cadence_core.turn_state import TurnState, TurnStateMachine


def test_valid_cycle():
    machine = TurnStateMachine()
    assert machine.state is TurnState.LISTENING
    assert machine.transition(TurnState.GENERATING)
    assert machine.transition(TurnState.SPEAKING)
    assert machine.transition(TurnState.LISTENING)


def test_generation_can_return_to_listening_without_speaking():
    machine = TurnStateMachine()
    machine.transition(TurnState.GENERATING)
    assert machine.transition(TurnState.LISTENING)


def test_invalid_transitions_are_rejected():
    machine = TurnStateMachine()
    assert not machine.can_transition(TurnState.SPEAKING)
    assert not machine.transition(TurnState.SPEAKING)
    assert not machine.transition(TurnState.LISTENING)
    assert machine.state is TurnState.LISTENING

    machine.transition(TurnState.GENERATING)
    machine.transition(TurnState.SPEAKING)
    assert not machine.transition(TurnState.GENERATING)
    assert machine.state is TurnState.SPEAKING


def test_listeners_see_accepted_transitions_only():
    machine = TurnStateMachine()
    seen = []
    unsubscribe = machine.subscribe(lambda prev, new: seen.append((prev, new)))
    machine.transition(TurnState.GENERATING)
    machine.transition(TurnState.GENERATING)
    unsubscribe()
    machine.transition(TurnState.LISTENING)
    assert seen == [(TurnState.LISTENING, TurnState.GENERATING)]
