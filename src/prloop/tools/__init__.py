"""Operations built on the pr-loop core: waiting, replying, cleanup and readiness."""
