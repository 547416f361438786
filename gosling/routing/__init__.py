from gosling.routing.router import ModelRouter, SwitchoverPolicy, TurnCountPolicy

__all__ = ["ModelRouter", "SwitchoverPolicy", "TurnCountPolicy"]
