"""Predefined Workflows - Stock templates for the four workflow kinds"""
from typing import Any, Dict, List

from .enums import WorkflowKind, SYSTEM_ROLE
from .models import StepDefinition


def _step(name: str, role: str, hours: float = None, **kwargs: Any) -> StepDefinition:
    return StepDefinition(name=name, required_role=role, estimated_duration_hours=hours, **kwargs)


def predefined_definitions() -> List[Dict[str, Any]]:
    """Name, kind, description and steps of every stock workflow"""
    return [
        {
            "name": "Workflow Dépôt Légal Standard",
            "kind": WorkflowKind.LEGAL_DEPOSIT,
            "description": "Processus standard de traitement des demandes de dépôt légal",
            "steps": [
                _step("Réception et Enregistrement", "agent_dl", 2,
                      validation_criteria=["formulaire_complet", "pieces_jointes"]),
                _step("Vérification Documents", "validateur", 4,
                      validation_criteria=["conformite_documents"]),
                _step("Attribution Numéros", "agent_isbn", 1,
                      validation_criteria=["numero_dl", "isbn_issn"]),
                _step("Contrôle Qualité", "agent_dl", 2),
                _step("Archivage et Finalisation", "conservateur", 1),
            ],
        },
        {
            "name": "Workflow Publication",
            "kind": WorkflowKind.PUBLICATION,
            "description": "Soumission d'une publication au comité de validation",
            "steps": [
                _step("Enregistrement de la soumission", SYSTEM_ROLE, auto_complete=True),
                _step("Examen du comité de validation", "comite_validation", 72, committee_review=True),
                _step("Validation éditoriale", "validateur", 8),
                _step("Mise en ligne", "conservateur", 2),
            ],
        },
        {
            "name": "Workflow Reproduction",
            "kind": WorkflowKind.REPRODUCTION,
            "description": "Traitement des demandes de reproduction de documents",
            "start_pending": True,
            "steps": [
                _step("Validation service", "service_reproduction", 24),
                _step("Validation responsable", "responsable_reproduction", 24),
                _step("Réception du paiement", "comptable", 48,
                      validation_criteria=["paiement_recu"]),
                _step("Traitement de la reproduction", "service_reproduction", 72),
            ],
        },
        {
            "name": "Workflow Restauration",
            "kind": WorkflowKind.RESTORATION,
            "description": "Prise en charge des demandes de restauration de manuscrits",
            "steps": [
                _step("Approbation direction", "directeur", 48),
                _step("Réception de l'œuvre", "restaurateur", 24),
                _step("Diagnostic", "restaurateur", 72,
                      validation_criteria=["rapport_diagnostic"]),
                _step("Devis et paiement", "comptable", 72,
                      validation_criteria=["devis_envoye", "paiement_valide"]),
                _step("Restauration", "restaurateur"),
                _step("Restitution de l'œuvre", "agent_accueil", 24),
            ],
        },
    ]
