"""pr-loop: triage a pull request into one recommended next action."""
